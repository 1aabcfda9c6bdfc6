"""
FifoAllocator -- load, plan and commit FIFO draws against receipt layers.

Responsibility:
    Bridge between the receipt-layer table and the pure ``plan_fifo``
    engine.  ``plan`` locks the SKU's live layers and computes draws;
    ``commit`` writes every decrement of a plan; ``allocate`` does both.

Architecture position:
    Services -- flushes within the caller's transaction.  The COGS engine
    plans every component of an order before committing any of them.

Invariants enforced:
    - Layers are read with SELECT ... FOR UPDATE (PostgreSQL), so check and
      consume happen under the same lock.
    - ``commit`` verifies each layer still holds what the plan expected;
      a mismatch is a DataIntegrityError, never a silent clamp.

Failure modes:
    - InsufficientStockError, DataIntegrityError (from the engine or the
      commit check).
"""

from decimal import Decimal

from sqlalchemy import select

from costing_engines.fifo import FifoPlan, LayerState, plan_fifo
from costing_kernel.exceptions import DataIntegrityError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.inventory import ReceiptLayer
from costing_kernel.services.base import BaseService

logger = get_logger("services.fifo_allocator")

ZERO = Decimal("0")


class FifoAllocator(BaseService):
    """Plans and applies oldest-first consumption for one SKU at a time."""

    def _load_layers(self, sku: str) -> dict:
        rows = self.session.execute(
            select(ReceiptLayer)
            .where(
                ReceiptLayer.sku == sku,
                ReceiptLayer.is_voided.is_(False),
                ReceiptLayer.qty_remaining != ZERO,
            )
            .order_by(ReceiptLayer.received_at, ReceiptLayer.sequence)
            .with_for_update()
        ).scalars()
        return {row.id: row for row in rows}

    @staticmethod
    def _to_state(layer: ReceiptLayer) -> LayerState:
        return LayerState(
            layer_id=layer.id,
            sku=layer.sku,
            received_at=layer.received_at,
            sequence=layer.sequence,
            qty_received=layer.qty_received,
            qty_remaining=layer.qty_remaining,
            unit_cost=layer.unit_cost,
            is_voided=layer.is_voided,
        )

    def plan(self, sku: str, quantity: Decimal) -> FifoPlan:
        """
        Compute draws for ``quantity`` of ``sku`` without writing.

        Raises:
            InsufficientStockError: eligible stock is short.
            DataIntegrityError: a layer violates its bounds.
        """
        layers = self._load_layers(sku)
        try:
            return plan_fifo(
                sku=sku,
                quantity=quantity,
                layers=[self._to_state(layer) for layer in layers.values()],
            )
        except DataIntegrityError as exc:
            logger.error(
                "fifo_layer_integrity_violation",
                extra={"sku": exc.sku, "layer_id": exc.layer_id},
                exc_info=True,
            )
            raise

    def commit(self, plan: FifoPlan) -> None:
        """Apply every decrement in ``plan`` and flush once."""
        for draw in plan.draws:
            layer = self.session.get(ReceiptLayer, draw.layer_id)
            if layer is None or layer.is_voided:
                raise DataIntegrityError(
                    f"Planned layer {draw.layer_id} is missing or voided",
                    sku=plan.sku,
                    layer_id=str(draw.layer_id),
                )
            new_remaining = layer.qty_remaining - draw.quantity
            if new_remaining != draw.remaining_after or new_remaining < ZERO:
                raise DataIntegrityError(
                    f"Layer {draw.layer_id} changed since planning: expected "
                    f"{draw.remaining_after} remaining, found {new_remaining}",
                    sku=plan.sku,
                    layer_id=str(draw.layer_id),
                )
            layer.qty_remaining = new_remaining
        self.session.flush()

        logger.debug(
            "fifo_plan_committed",
            extra={
                "sku": plan.sku,
                "quantity": plan.quantity,
                "layer_count": len(plan.draws),
                "total_cost": plan.total_cost,
            },
        )

    def allocate(self, sku: str, quantity: Decimal) -> FifoPlan:
        """Plan and commit in one call."""
        plan = self.plan(sku, quantity)
        self.commit(plan)
        return plan
