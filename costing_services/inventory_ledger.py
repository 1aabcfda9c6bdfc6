"""
InventoryLedgerService -- catalog items, receipts and bundle recipes.

Responsibility:
    The write side of the inventory ledger outside of COGS: creating items,
    recording opening balances and stock-ins as receipt layers, voiding or
    correcting layers nothing has been drawn from, and replacing bundle
    recipes.

Architecture position:
    Services -- flushes within the caller's transaction.

Invariants enforced:
    - Bundles never receive layers.
    - A layer may be voided or edited only while qty_remaining equals
      qty_received; once drawn from it is immutable, which keeps the
      quantity conservation identity intact.
    - Voided layers keep their row (voided_at, void_reason, voided_by_id).
    - Every receipt-side change refreshes the SKU's cost snapshots.

Failure modes:
    - ItemNotFoundError, ItemAlreadyExistsError, BundleNotStockableError,
      InvalidQuantityError, InvalidBundleRecipeError, LayerNotFoundError,
      LayerNotVoidableError.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, select

from costing_kernel.domain.values import RefType, as_utc, business_date
from costing_kernel.exceptions import (
    BundleNotStockableError,
    InvalidBundleRecipeError,
    InvalidQuantityError,
    ItemAlreadyExistsError,
    ItemNotFoundError,
    LayerNotFoundError,
    LayerNotVoidableError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.inventory import BundleComponent, InventoryItem, ReceiptLayer
from costing_kernel.services.base import BaseService
from costing_kernel.services.sequence_service import SequenceService
from costing_services.average_cost import AverageCostService

logger = get_logger("services.inventory_ledger")

ZERO = Decimal("0")
MIN_VOID_REASON_LENGTH = 10


class InventoryLedgerService(BaseService):
    """Maintains items, receipt layers and bundle recipes."""

    def __init__(
        self,
        session,
        clock=None,
        actor_id: UUID | None = None,
        business_timezone: str = "Asia/Bangkok",
    ):
        super().__init__(session, clock, actor_id)
        self.business_timezone = business_timezone
        self._sequences = SequenceService(session)
        self._average_cost = AverageCostService(
            session, self.clock, actor_id, business_timezone=business_timezone
        )

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def get_item(self, sku: str) -> InventoryItem:
        item = self.session.execute(
            select(InventoryItem).where(InventoryItem.sku_internal == sku)
        ).scalar_one_or_none()
        if item is None:
            raise ItemNotFoundError(sku)
        return item

    def create_item(
        self,
        sku: str,
        product_name: str,
        base_cost: Decimal = ZERO,
        is_bundle: bool = False,
    ) -> InventoryItem:
        sku = sku.strip()
        if not sku:
            raise InvalidQuantityError("sku", sku)
        if base_cost < ZERO:
            raise InvalidQuantityError("base_cost", base_cost)
        existing = self.session.execute(
            select(InventoryItem.id).where(InventoryItem.sku_internal == sku)
        ).scalar_one_or_none()
        if existing is not None:
            raise ItemAlreadyExistsError(sku)

        item = InventoryItem(
            sku_internal=sku,
            product_name=product_name,
            base_cost=base_cost,
            is_bundle=is_bundle,
            created_by_id=self.actor_id,
        )
        self.session.add(item)
        self.session.flush()
        logger.info("inventory_item_created", extra={"sku": sku, "is_bundle": is_bundle})
        return item

    def update_item(
        self,
        sku: str,
        product_name: str | None = None,
        base_cost: Decimal | None = None,
    ) -> InventoryItem:
        """Change display attributes; the SKU itself is immutable."""
        item = self.get_item(sku)
        if product_name is not None:
            item.product_name = product_name
        if base_cost is not None:
            if base_cost < ZERO:
                raise InvalidQuantityError("base_cost", base_cost)
            item.base_cost = base_cost
        item.updated_by_id = self.actor_id
        self.session.flush()
        return item

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def _add_layer(
        self,
        sku: str,
        qty: Decimal,
        unit_cost: Decimal,
        received_at: datetime,
        ref_type: RefType,
        ref_id: str | None,
    ) -> ReceiptLayer:
        item = self.get_item(sku)
        if item.is_bundle:
            raise BundleNotStockableError(sku)
        if qty <= ZERO:
            raise InvalidQuantityError("qty", qty)
        if unit_cost < ZERO:
            raise InvalidQuantityError("unit_cost", unit_cost)

        layer = ReceiptLayer(
            sku=sku,
            received_at=as_utc(received_at),
            qty_received=qty,
            qty_remaining=qty,
            unit_cost=unit_cost,
            ref_type=ref_type.value,
            ref_id=ref_id,
            sequence=self._sequences.next_value(SequenceService.RECEIPT_LAYER),
            created_by_id=self.actor_id,
        )
        self.session.add(layer)
        self.session.flush()
        self._average_cost.refresh(sku, since=business_date(received_at, self.business_timezone))

        logger.info(
            "receipt_layer_recorded",
            extra={
                "sku": sku,
                "layer_id": layer.id,
                "ref_type": ref_type.value,
                "qty": qty,
                "unit_cost": unit_cost,
                "sequence": layer.sequence,
            },
        )
        return layer

    def record_opening_balance(
        self,
        sku: str,
        qty: Decimal,
        unit_cost: Decimal,
        received_at: datetime,
        ref_id: str | None = None,
    ) -> ReceiptLayer:
        return self._add_layer(sku, qty, unit_cost, received_at, RefType.OPENING_BALANCE, ref_id)

    def record_stock_in(
        self,
        sku: str,
        qty: Decimal,
        unit_cost: Decimal,
        received_at: datetime,
        ref_id: str | None = None,
    ) -> ReceiptLayer:
        return self._add_layer(sku, qty, unit_cost, received_at, RefType.PURCHASE, ref_id)

    def _get_mutable_layer(self, layer_id: UUID, action: str) -> ReceiptLayer:
        layer = self.session.execute(
            select(ReceiptLayer).where(ReceiptLayer.id == layer_id).with_for_update()
        ).scalar_one_or_none()
        if layer is None:
            raise LayerNotFoundError(str(layer_id))
        if layer.is_voided:
            raise LayerNotVoidableError(str(layer_id), f"cannot {action} a voided layer")
        if not layer.is_untouched:
            raise LayerNotVoidableError(
                str(layer_id),
                f"cannot {action}: {layer.qty_received - layer.qty_remaining} already consumed",
            )
        return layer

    def void_layer(self, layer_id: UUID, reason: str) -> ReceiptLayer:
        """
        Void a layer nothing has been drawn from.

        Raises:
            LayerNotFoundError, LayerNotVoidableError, InvalidQuantityError
            (reason shorter than 10 characters).
        """
        if reason is None or len(reason.strip()) < MIN_VOID_REASON_LENGTH:
            raise InvalidQuantityError("void_reason", reason)
        layer = self._get_mutable_layer(layer_id, "void")

        layer.is_voided = True
        layer.voided_at = self.clock.now_utc()
        layer.voided_by_id = self.actor_id
        layer.void_reason = reason.strip()
        self.session.flush()
        self._average_cost.refresh(
            layer.sku, since=business_date(layer.received_at, self.business_timezone)
        )

        logger.info(
            "receipt_layer_voided",
            extra={"sku": layer.sku, "layer_id": layer.id, "qty": layer.qty_received},
        )
        return layer

    def update_opening_balance(
        self,
        layer_id: UUID,
        qty: Decimal | None = None,
        unit_cost: Decimal | None = None,
        received_at: datetime | None = None,
    ) -> ReceiptLayer:
        """Correct an untouched layer in place."""
        layer = self._get_mutable_layer(layer_id, "edit")
        earliest = business_date(layer.received_at, self.business_timezone)

        if qty is not None:
            if qty <= ZERO:
                raise InvalidQuantityError("qty", qty)
            layer.qty_received = qty
            layer.qty_remaining = qty
        if unit_cost is not None:
            if unit_cost < ZERO:
                raise InvalidQuantityError("unit_cost", unit_cost)
            layer.unit_cost = unit_cost
        if received_at is not None:
            layer.received_at = as_utc(received_at)
            earliest = min(earliest, business_date(received_at, self.business_timezone))
        layer.updated_by_id = self.actor_id
        self.session.flush()
        self._average_cost.refresh(layer.sku, since=earliest)

        logger.info(
            "receipt_layer_updated",
            extra={
                "sku": layer.sku,
                "layer_id": layer.id,
                "qty": layer.qty_received,
                "unit_cost": layer.unit_cost,
            },
        )
        return layer

    # ------------------------------------------------------------------
    # Bundle recipes
    # ------------------------------------------------------------------

    def upsert_bundle_recipe(
        self,
        bundle_sku: str,
        components: Iterable[tuple[str, Decimal]],
    ) -> list[BundleComponent]:
        """
        Replace the recipe of ``bundle_sku`` wholesale.

        Raises:
            ItemNotFoundError: bundle or a component does not exist.
            InvalidBundleRecipeError: not a bundle, empty recipe, self
                reference, nested bundle, duplicate or non-positive qty.
        """
        bundle = self.get_item(bundle_sku)
        if not bundle.is_bundle:
            raise InvalidBundleRecipeError(bundle_sku, "item is not a bundle")

        lines = [(sku.strip(), Decimal(qty)) for sku, qty in components]
        if not lines:
            raise InvalidBundleRecipeError(bundle_sku, "recipe has no components")
        seen: set[str] = set()
        for component_sku, qty in lines:
            if component_sku == bundle_sku:
                raise InvalidBundleRecipeError(bundle_sku, "bundle cannot contain itself")
            if component_sku in seen:
                raise InvalidBundleRecipeError(bundle_sku, f"duplicate component {component_sku}")
            if qty <= ZERO:
                raise InvalidBundleRecipeError(bundle_sku, f"quantity for {component_sku} must be > 0")
            if self.get_item(component_sku).is_bundle:
                raise InvalidBundleRecipeError(bundle_sku, f"component {component_sku} is a bundle")
            seen.add(component_sku)

        self.session.execute(
            delete(BundleComponent)
            .where(BundleComponent.bundle_sku == bundle_sku)
            .execution_options(synchronize_session="fetch")
        )
        rows = [
            BundleComponent(
                bundle_sku=bundle_sku,
                component_sku=component_sku,
                quantity=qty,
                created_by_id=self.actor_id,
            )
            for component_sku, qty in lines
        ]
        self.session.add_all(rows)
        self.session.flush()

        logger.info(
            "bundle_recipe_replaced",
            extra={"bundle_sku": bundle_sku, "component_count": len(rows)},
        )
        return rows
