"""
CogsReversalService -- restore stock and reverse COGS for returned orders.

Responsibility:
    Given a returned quantity of an order line, write reversal allocation
    rows (negative qty and amount) and put the quantity back into stock.
    Every return is logged in ``inventory_returns``; a return can later be
    undone, which takes the restored stock out again.

Architecture position:
    Services -- runs inside one savepoint per return or undo.

Invariants enforced:
    - Draws are undone oldest-first (lowest allocation sequence first).
    - Stock goes back to the layer it was drawn from when that layer is
      live and has headroom.  Otherwise a RETURN layer is created at the
      unit cost the draw was recognized at, so a return is never lost.
    - Reversal rows keep ``layer_id`` = the layer originally drawn from
      and record ``restored_layer_id``.
    - REFUND_ONLY returns are logged and count against the returnable
      quantity, but touch neither stock nor COGS.
    - Undoing a return re-consumes exactly what it restored, from the layer
      it was restored to, at the same unit cost.
    - Quantity conservation holds after every return and undo.
    - Each (order, line sku, component, reference) is reversed at most
      once; the claim unique constraint enforces it.

Failure modes:
    - NothingToReverseError, ReturnExceedsAllocationError,
      AlreadyReversedError, InvalidQuantityError.
    - ReturnNotFoundError, ReturnAlreadyUndoneError, InsufficientStockError
      (undo only: restored stock was sold again).
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from costing_config.schema import CostingSettings
from costing_kernel.domain.values import RefType, ReturnType, as_utc, business_date, round_money
from costing_kernel.exceptions import (
    AlreadyReversedError,
    InsufficientStockError,
    InvalidQuantityError,
    NothingToReverseError,
    ReturnAlreadyUndoneError,
    ReturnExceedsAllocationError,
    ReturnNotFoundError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.cogs import ORIGINAL_REFERENCE, CogsAllocation, CogsAllocationClaim
from costing_kernel.models.inventory import ReceiptLayer
from costing_kernel.models.returns import InventoryReturn, ReturnAction
from costing_kernel.services.base import BaseService
from costing_kernel.services.sequence_service import SequenceService
from costing_services.average_cost import AverageCostService

logger = get_logger("services.cogs_reversal")

ZERO = Decimal("0")

# Claims and rows written by an undo use this prefix on the return reference
UNDO_PREFIX = "UNDO:"


@dataclass(frozen=True)
class RestoredDraw:
    layer_id: UUID | None
    restored_layer_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    amount: Decimal
    synthesized: bool


@dataclass(frozen=True)
class ReversedComponent:
    sku: str
    quantity: Decimal
    amount: Decimal
    restored: tuple[RestoredDraw, ...]


@dataclass(frozen=True)
class ReversalResult:
    order_id: str
    line_sku: str
    reference: str
    quantity: Decimal
    components: tuple[ReversedComponent, ...]
    return_type: ReturnType = ReturnType.RETURN_RECEIVED

    @property
    def amount(self) -> Decimal:
        return sum((c.amount for c in self.components), ZERO)


@dataclass(frozen=True)
class UndoResult:
    order_id: str
    line_sku: str
    reference: str
    quantity: Decimal
    amount: Decimal


class CogsReversalService(BaseService):
    """Reverses COGS for returned order lines."""

    def __init__(self, session, clock=None, actor_id=None, settings: CostingSettings | None = None):
        super().__init__(session, clock, actor_id)
        self.settings = settings or CostingSettings()
        self.average_cost = AverageCostService(
            session, self.clock, actor_id, business_timezone=self.settings.business_timezone
        )
        self._sequences = SequenceService(session)

    def _claims(self, order_id: str, line_sku: str) -> list[CogsAllocationClaim]:
        return list(
            self.session.execute(
                select(CogsAllocationClaim)
                .where(
                    CogsAllocationClaim.order_id == order_id,
                    CogsAllocationClaim.line_sku == line_sku,
                )
                .order_by(CogsAllocationClaim.sku)
            ).scalars()
        )

    def _returns(self, order_id: str, line_sku: str) -> list[InventoryReturn]:
        return list(
            self.session.execute(
                select(InventoryReturn).where(
                    InventoryReturn.order_id == order_id,
                    InventoryReturn.line_sku == line_sku,
                )
            ).scalars()
        )

    def outstanding_quantity(self, order_id: str, line_sku: str) -> Decimal:
        """Order-line units whose COGS is still recognized."""
        originals, reversals, reapplied = self._split_claims(self._claims(order_id, line_sku))
        if not originals:
            return ZERO
        return self._outstanding(originals, reversals, reapplied)

    def returnable_quantity(self, order_id: str, line_sku: str) -> Decimal:
        """Outstanding units less live refund-only returns."""
        outstanding = self.outstanding_quantity(order_id, line_sku)
        return outstanding - self._refunded(self._returns(order_id, line_sku))

    @staticmethod
    def _split_claims(claims):
        originals = [
            c for c in claims if not c.is_reversal and c.reference == ORIGINAL_REFERENCE
        ]
        reversals = [c for c in claims if c.is_reversal]
        reapplied = [
            c for c in claims if not c.is_reversal and c.reference != ORIGINAL_REFERENCE
        ]
        return originals, reversals, reapplied

    @staticmethod
    def _outstanding(originals, reversals, reapplied) -> Decimal:
        # Every component claim of a return carries the same line quantity
        anchor = originals[0].sku
        returned = sum((c.line_quantity for c in reversals if c.sku == anchor), ZERO)
        undone = sum((c.line_quantity for c in reapplied if c.sku == anchor), ZERO)
        return originals[0].line_quantity - returned + undone

    @staticmethod
    def _refunded(records: list[InventoryReturn]) -> Decimal:
        undone = {r.reversed_return_id for r in records if r.action_type == ReturnAction.UNDO}
        return sum(
            (
                r.quantity
                for r in records
                if r.action_type == ReturnAction.RETURN
                and r.return_type == ReturnType.REFUND_ONLY
                and r.id not in undone
            ),
            ZERO,
        )

    @staticmethod
    def _clean_reference(reference: str) -> str:
        if not reference or not reference.strip():
            raise InvalidQuantityError("reference", reference)
        return reference.strip()

    def reverse_order(
        self,
        order_id: str,
        line_sku: str,
        returned_at: datetime,
        reference: str,
        quantity: Decimal | None = None,
        return_type: ReturnType = ReturnType.RETURN_RECEIVED,
        note: str | None = None,
    ) -> ReversalResult:
        """
        Apply a return of ``quantity`` order-line units (None = all returnable).

        RETURN_RECEIVED and CANCEL_BEFORE_SHIP restore stock and write
        reversal rows.  REFUND_ONLY only logs the return.

        Raises:
            NothingToReverseError: nothing allocated or all already returned.
            ReturnExceedsAllocationError: quantity > returnable quantity.
            AlreadyReversedError: ``reference`` was already applied.
            InvalidQuantityError: quantity <= 0 or empty reference.
        """
        reference = self._clean_reference(reference)
        return_type = ReturnType(return_type)
        returned_at = as_utc(returned_at)

        with LogContext.bind(order_id=order_id):
            originals, reversals, reapplied = self._split_claims(self._claims(order_id, line_sku))
            if not originals:
                raise NothingToReverseError(order_id, line_sku)
            records = self._returns(order_id, line_sku)
            if any(c.reference == reference for c in reversals) or any(
                r.reference == reference and r.action_type == ReturnAction.RETURN
                for r in records
            ):
                raise AlreadyReversedError(order_id, reference)

            outstanding = self._outstanding(originals, reversals, reapplied)
            returnable = outstanding - self._refunded(records)
            if returnable <= ZERO:
                raise NothingToReverseError(order_id, line_sku)
            if quantity is None:
                quantity = returnable
            if quantity <= ZERO:
                raise InvalidQuantityError("quantity", quantity)
            if quantity > returnable:
                raise ReturnExceedsAllocationError(order_id, line_sku, quantity, returnable)
            full_return = quantity == outstanding

            with self.session.begin_nested():
                components = []
                if return_type.restocks:
                    components = [
                        self._reverse_component(claim, quantity, full_return, returned_at, reference)
                        for claim in originals
                    ]
                    since = business_date(returned_at, self.settings.business_timezone)
                    for claim in originals:
                        self.average_cost.refresh(claim.sku, since=since)
                self.session.add(
                    InventoryReturn(
                        order_id=order_id,
                        line_sku=line_sku,
                        reference=reference,
                        quantity=quantity,
                        return_type=return_type.value,
                        action_type=ReturnAction.RETURN.value,
                        returned_at=returned_at,
                        note=note,
                        created_by_id=self.actor_id,
                    )
                )
                try:
                    self.session.flush()
                except IntegrityError as exc:
                    raise AlreadyReversedError(order_id, reference) from exc

            result = ReversalResult(
                order_id=order_id,
                line_sku=line_sku,
                reference=reference,
                quantity=quantity,
                components=tuple(components),
                return_type=return_type,
            )
            logger.info(
                "cogs_order_reversed",
                extra={
                    "line_sku": line_sku,
                    "reference": reference,
                    "return_type": return_type.value,
                    "quantity": quantity,
                    "amount": result.amount,
                    "full_return": full_return,
                },
            )
            return result

    def _reverse_component(
        self,
        original: CogsAllocationClaim,
        quantity: Decimal,
        full_return: bool,
        returned_at: datetime,
        reference: str,
    ) -> ReversedComponent:
        rows = self.session.execute(
            select(CogsAllocation)
            .where(
                CogsAllocation.order_id == original.order_id,
                CogsAllocation.line_sku == original.line_sku,
                CogsAllocation.sku == original.sku,
            )
            .order_by(CogsAllocation.sequence.asc())
        ).scalars()

        # Net quantity and amount still recognized per layer, in draw order.
        # Undo rows are draws on the layer the undone return restored to.
        first_draw: dict[UUID | None, CogsAllocation] = {}
        open_qty: dict[UUID | None, Decimal] = defaultdict(lambda: ZERO)
        open_amount: dict[UUID | None, Decimal] = defaultdict(lambda: ZERO)
        per_line = ZERO
        for r in rows:
            if not r.is_reversal:
                first_draw.setdefault(r.layer_id, r)
                if r.claim_id == original.id:
                    per_line += r.qty
            open_qty[r.layer_id] += r.qty
            open_amount[r.layer_id] += r.amount

        if full_return:
            to_restore = sum((open_qty[layer] for layer in first_draw), ZERO)
        else:
            to_restore = per_line / original.line_quantity * quantity

        claim = CogsAllocationClaim(
            order_id=original.order_id,
            line_sku=original.line_sku,
            sku=original.sku,
            is_reversal=True,
            reference=reference,
            line_quantity=quantity,
            method=original.method,
            created_by_id=self.actor_id,
        )
        self.session.add(claim)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise AlreadyReversedError(original.order_id, reference) from exc

        restored: list[RestoredDraw] = []
        remaining = to_restore
        for layer_id, draw in first_draw.items():
            if remaining <= ZERO:
                break
            open_here = open_qty[layer_id]
            if open_here <= ZERO:
                continue
            take = min(open_here, remaining)
            if take == open_here:
                amount = open_amount[layer_id]
            else:
                amount = round_money(take * draw.unit_cost_used)

            target, synthesized = self._restore(draw, take, returned_at, reference)
            self.session.add(
                CogsAllocation(
                    claim_id=claim.id,
                    order_id=draw.order_id,
                    line_sku=draw.line_sku,
                    sku=draw.sku,
                    recognized_at=returned_at,
                    method=draw.method,
                    qty=-take,
                    unit_cost_used=draw.unit_cost_used,
                    amount=-amount,
                    layer_id=layer_id,
                    restored_layer_id=target.id,
                    is_reversal=True,
                    reference=reference,
                    sequence=self._sequences.next_value(SequenceService.COGS_ALLOCATION),
                    created_by_id=self.actor_id,
                )
            )
            restored.append(
                RestoredDraw(
                    layer_id=layer_id,
                    restored_layer_id=target.id,
                    quantity=take,
                    unit_cost=draw.unit_cost_used,
                    amount=amount,
                    synthesized=synthesized,
                )
            )
            remaining -= take
        self.session.flush()

        return ReversedComponent(
            sku=original.sku,
            quantity=to_restore - remaining,
            amount=sum((r.amount for r in restored), ZERO),
            restored=tuple(restored),
        )

    def _restore(
        self,
        draw: CogsAllocation,
        quantity: Decimal,
        returned_at: datetime,
        reference: str,
    ) -> tuple[ReceiptLayer, bool]:
        """Put ``quantity`` back on the original layer, or on a new RETURN layer."""
        layer = None
        if draw.layer_id is not None:
            layer = self.session.execute(
                select(ReceiptLayer).where(ReceiptLayer.id == draw.layer_id).with_for_update()
            ).scalar_one_or_none()

        if (
            layer is not None
            and not layer.is_voided
            and layer.qty_remaining + quantity <= layer.qty_received
        ):
            layer.qty_remaining += quantity
            return layer, False

        replacement = ReceiptLayer(
            sku=draw.sku,
            received_at=returned_at,
            qty_received=quantity,
            qty_remaining=quantity,
            unit_cost=draw.unit_cost_used,
            ref_type=RefType.RETURN.value,
            ref_id=reference,
            sequence=self._sequences.next_value(SequenceService.RECEIPT_LAYER),
            created_by_id=self.actor_id,
        )
        self.session.add(replacement)
        self.session.flush()
        logger.info(
            "return_layer_synthesized",
            extra={
                "sku": draw.sku,
                "original_layer_id": draw.layer_id,
                "layer_id": replacement.id,
                "qty": quantity,
                "unit_cost": draw.unit_cost_used,
            },
        )
        return replacement, True

    def undo_reversal(
        self,
        order_id: str,
        line_sku: str,
        reference: str,
        undone_at: datetime | None = None,
    ) -> UndoResult:
        """
        Undo the return ``reference`` on an order line.

        A restocking return has its restored stock consumed again and its
        reversal rows offset by new draws recognized at ``undone_at``
        (default: now).  A refund-only return is simply marked undone.

        Raises:
            ReturnNotFoundError: no such return on this line.
            ReturnAlreadyUndoneError: the return was already undone.
            InsufficientStockError: restored stock has since been drawn.
        """
        reference = self._clean_reference(reference)
        undone_at = as_utc(undone_at) if undone_at is not None else self.clock.now_utc()

        with LogContext.bind(order_id=order_id):
            records = self._returns(order_id, line_sku)
            applied = next(
                (
                    r
                    for r in records
                    if r.reference == reference and r.action_type == ReturnAction.RETURN
                ),
                None,
            )
            if applied is None:
                raise ReturnNotFoundError(order_id, reference)
            if any(r.reversed_return_id == applied.id for r in records):
                raise ReturnAlreadyUndoneError(order_id, reference)

            amount = ZERO
            with self.session.begin_nested():
                if ReturnType(applied.return_type).restocks:
                    by_sku: dict[str, list[CogsAllocation]] = defaultdict(list)
                    rows = self.session.execute(
                        select(CogsAllocation)
                        .where(
                            CogsAllocation.order_id == order_id,
                            CogsAllocation.line_sku == line_sku,
                            CogsAllocation.is_reversal.is_(True),
                            CogsAllocation.reference == reference,
                        )
                        .order_by(CogsAllocation.sequence.asc())
                    ).scalars()
                    for row in rows:
                        by_sku[row.sku].append(row)
                    for sku, sku_rows in by_sku.items():
                        amount += self._reapply_component(
                            sku_rows, applied.quantity, undone_at, reference
                        )
                    since = business_date(undone_at, self.settings.business_timezone)
                    for sku in by_sku:
                        self.average_cost.refresh(sku, since=since)

                self.session.add(
                    InventoryReturn(
                        order_id=order_id,
                        line_sku=line_sku,
                        reference=reference,
                        quantity=applied.quantity,
                        return_type=applied.return_type,
                        action_type=ReturnAction.UNDO.value,
                        reversed_return_id=applied.id,
                        returned_at=undone_at,
                        created_by_id=self.actor_id,
                    )
                )
                try:
                    self.session.flush()
                except IntegrityError as exc:
                    raise ReturnAlreadyUndoneError(order_id, reference) from exc

            logger.info(
                "cogs_return_undone",
                extra={
                    "line_sku": line_sku,
                    "reference": reference,
                    "quantity": applied.quantity,
                    "amount": amount,
                },
            )
            return UndoResult(
                order_id=order_id,
                line_sku=line_sku,
                reference=reference,
                quantity=applied.quantity,
                amount=amount,
            )

    def _reapply_component(
        self,
        rows: list[CogsAllocation],
        line_quantity: Decimal,
        undone_at: datetime,
        reference: str,
    ) -> Decimal:
        """Draw back what the reversal rows restored; return the COGS re-recognized."""
        first = rows[0]
        undo_reference = f"{UNDO_PREFIX}{reference}"
        claim = CogsAllocationClaim(
            order_id=first.order_id,
            line_sku=first.line_sku,
            sku=first.sku,
            is_reversal=False,
            reference=undo_reference,
            line_quantity=line_quantity,
            method=first.method,
            created_by_id=self.actor_id,
        )
        self.session.add(claim)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ReturnAlreadyUndoneError(first.order_id, reference) from exc

        amount = ZERO
        for row in rows:
            qty = -row.qty
            layer = self.session.execute(
                select(ReceiptLayer).where(ReceiptLayer.id == row.restored_layer_id).with_for_update()
            ).scalar_one()
            available = ZERO if layer.is_voided else layer.qty_remaining
            if available < qty:
                raise InsufficientStockError(row.sku, qty, available)
            layer.qty_remaining -= qty
            self.session.add(
                CogsAllocation(
                    claim_id=claim.id,
                    order_id=row.order_id,
                    line_sku=row.line_sku,
                    sku=row.sku,
                    recognized_at=undone_at,
                    method=row.method,
                    qty=qty,
                    unit_cost_used=row.unit_cost_used,
                    amount=-row.amount,
                    layer_id=layer.id,
                    is_reversal=False,
                    reference=undo_reference,
                    sequence=self._sequences.next_value(SequenceService.COGS_ALLOCATION),
                    created_by_id=self.actor_id,
                )
            )
            amount += -row.amount
        self.session.flush()
        return amount
