"""
AverageCostService -- moving-average cost snapshots.

Responsibility:
    Derive ``inventory_cost_snapshots`` for a SKU from the ledger: receipts
    of non-voided layers add (qty, qty * unit_cost); allocation rows subtract
    their signed (qty, amount).  Snapshots are bucketed by business day.

Architecture position:
    Services -- calls the pure ``costing_engines.moving_average`` engine.

Invariants enforced:
    - Snapshots are always derived, never edited.  ``refresh`` deletes and
      rebuilds every snapshot from ``since`` onward.
    - RETURN layers are not counted as receipts; the reversal allocation
      row that created them already carries the returned quantity.

Failure modes:
    - SnapshotNotFoundError from ``average_cost_as_of`` when nothing was
      received on or before the requested day.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import delete, select

from costing_engines.moving_average import CostMovement, SnapshotState, build_snapshots
from costing_kernel.domain.values import RefType, business_date, business_day_bounds
from costing_kernel.exceptions import SnapshotNotFoundError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cogs import CogsAllocation
from costing_kernel.models.inventory import CostSnapshot, ReceiptLayer
from costing_kernel.services.base import BaseService

logger = get_logger("services.average_cost")


class AverageCostService(BaseService):
    """Maintains and reads moving-average snapshots."""

    def __init__(self, session, clock=None, actor_id=None, business_timezone: str = "Asia/Bangkok"):
        super().__init__(session, clock, actor_id)
        self.business_timezone = business_timezone

    def _movements(self, sku: str, since: date | None) -> list[CostMovement]:
        layer_stmt = select(ReceiptLayer).where(
            ReceiptLayer.sku == sku,
            ReceiptLayer.is_voided.is_(False),
            ReceiptLayer.ref_type != RefType.RETURN.value,
        )
        alloc_stmt = select(CogsAllocation).where(CogsAllocation.sku == sku)
        if since is not None:
            start, _ = business_day_bounds(since, self.business_timezone)
            layer_stmt = layer_stmt.where(ReceiptLayer.received_at >= start)
            alloc_stmt = alloc_stmt.where(CogsAllocation.recognized_at >= start)

        movements = [
            CostMovement(
                occurred_on=business_date(layer.received_at, self.business_timezone),
                sequence=layer.sequence,
                qty=layer.qty_received,
                value=layer.qty_received * layer.unit_cost,
            )
            for layer in self.session.execute(layer_stmt).scalars()
        ]
        # Issues sort after same-day receipts
        offset = 1 << 40
        movements.extend(
            CostMovement(
                occurred_on=business_date(row.recognized_at, self.business_timezone),
                sequence=offset + row.sequence,
                qty=-row.qty,
                value=-row.amount,
            )
            for row in self.session.execute(alloc_stmt).scalars()
        )
        return movements

    def refresh(self, sku: str, since: date | None = None) -> list[SnapshotState]:
        """
        Rebuild snapshots for ``sku`` from ``since`` (None = from scratch).

        Postconditions:
            - Snapshots before ``since`` are untouched; later ones reflect
              the current ledger.
        """
        opening_row = None
        if since is not None:
            opening_row = self.session.execute(
                select(CostSnapshot)
                .where(CostSnapshot.sku == sku, CostSnapshot.as_of_date < since)
                .order_by(CostSnapshot.as_of_date.desc())
                .limit(1)
            ).scalar_one_or_none()

        opening = (
            SnapshotState(
                as_of_date=opening_row.as_of_date,
                on_hand_qty=opening_row.on_hand_qty,
                on_hand_value=opening_row.on_hand_value,
                avg_unit_cost=opening_row.avg_unit_cost,
            )
            if opening_row is not None
            else None
        )

        delete_stmt = delete(CostSnapshot).where(CostSnapshot.sku == sku)
        if since is not None:
            delete_stmt = delete_stmt.where(CostSnapshot.as_of_date >= since)
        self.session.execute(delete_stmt.execution_options(synchronize_session=False))

        states = build_snapshots(movements=self._movements(sku, since), opening=opening)
        for state in states:
            self.session.add(
                CostSnapshot(
                    sku=sku,
                    as_of_date=state.as_of_date,
                    on_hand_qty=state.on_hand_qty,
                    on_hand_value=state.on_hand_value,
                    avg_unit_cost=state.avg_unit_cost,
                    created_by_id=self.actor_id,
                )
            )
        self.session.flush()

        logger.debug(
            "cost_snapshots_refreshed",
            extra={"sku": sku, "since": since, "snapshot_count": len(states)},
        )
        return states

    def snapshot_as_of(self, sku: str, day: date) -> CostSnapshot | None:
        return self.session.execute(
            select(CostSnapshot)
            .where(CostSnapshot.sku == sku, CostSnapshot.as_of_date <= day)
            .order_by(CostSnapshot.as_of_date.desc())
            .limit(1)
        ).scalar_one_or_none()

    def average_cost_as_of(self, sku: str, day: date) -> Decimal:
        """
        Moving-average unit cost in effect at the end of ``day``.

        Raises:
            SnapshotNotFoundError: no snapshot on or before ``day``.
        """
        snapshot = self.snapshot_as_of(sku, day)
        if snapshot is None:
            raise SnapshotNotFoundError(sku, day)
        return snapshot.avg_unit_cost
