"""
Module: costing_kernel.selectors.cogs_selector
Responsibility: Read-only COGS queries: existing claims for bulk idempotence
    checks (in bounded chunks), allocation history of an order line, and
    daily COGS totals by business day.

Invariants enforced:
    - Claim lookups never send more than ``chunk_size`` order ids per query.
    - Daily COGS is the signed sum of allocation amounts recognized within
      the business day, rounded to cents and floored at zero.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from costing_kernel.domain.values import business_day_bounds, round_money
from costing_kernel.models.cogs import ORIGINAL_REFERENCE, CogsAllocation, CogsAllocationClaim
from costing_kernel.selectors.base import BaseSelector
from costing_kernel.utils.chunking import DEFAULT_CHUNK_SIZE, fetch_in_chunks

ZERO = Decimal("0")

ClaimKey = tuple[str, str, str]


@dataclass(frozen=True)
class AllocationView:
    allocation_id: UUID
    order_id: str
    line_sku: str
    sku: str
    recognized_at: datetime
    method: str
    qty: Decimal
    unit_cost_used: Decimal
    amount: Decimal
    layer_id: UUID | None
    restored_layer_id: UUID | None
    is_reversal: bool
    reference: str
    sequence: int


class CogsSelector(BaseSelector):
    """Queries over COGS claims and allocations."""

    def __init__(self, session, business_timezone: str = "Asia/Bangkok"):
        super().__init__(session)
        self.business_timezone = business_timezone

    def claimed_keys(
        self,
        order_ids: Iterable[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> set[ClaimKey]:
        """(order_id, line_sku, sku) of every original claim for ``order_ids``."""

        def fetch(chunk: list[str]) -> list[ClaimKey]:
            rows = self.session.execute(
                select(
                    CogsAllocationClaim.order_id,
                    CogsAllocationClaim.line_sku,
                    CogsAllocationClaim.sku,
                ).where(
                    CogsAllocationClaim.order_id.in_(chunk),
                    CogsAllocationClaim.is_reversal.is_(False),
                    CogsAllocationClaim.reference == ORIGINAL_REFERENCE,
                )
            )
            return [tuple(row) for row in rows]

        return fetch_in_chunks(order_ids, fetch, chunk_size)

    def allocations_for_line(self, order_id: str, line_sku: str) -> list[AllocationView]:
        rows = self.session.execute(
            select(CogsAllocation)
            .where(
                CogsAllocation.order_id == order_id,
                CogsAllocation.line_sku == line_sku,
            )
            .order_by(CogsAllocation.sequence)
        ).scalars()
        return [
            AllocationView(
                allocation_id=row.id,
                order_id=row.order_id,
                line_sku=row.line_sku,
                sku=row.sku,
                recognized_at=row.recognized_at,
                method=str(row.method),
                qty=row.qty,
                unit_cost_used=row.unit_cost_used,
                amount=row.amount,
                layer_id=row.layer_id,
                restored_layer_id=row.restored_layer_id,
                is_reversal=row.is_reversal,
                reference=row.reference,
                sequence=row.sequence,
            )
            for row in rows
        ]

    def net_allocated_qty(self, sku: str) -> Decimal:
        """Originals minus reversals (reversal qty is stored negative)."""
        total = self.session.execute(
            select(func.sum(CogsAllocation.qty)).where(CogsAllocation.sku == sku)
        ).scalar()
        return Decimal(total or 0)

    def daily_cogs(self, day: date) -> Decimal:
        """COGS recognized on one business day."""
        start, end = business_day_bounds(day, self.business_timezone)
        total = self.session.execute(
            select(func.sum(CogsAllocation.amount)).where(
                CogsAllocation.recognized_at >= start,
                CogsAllocation.recognized_at < end,
            )
        ).scalar()
        return max(round_money(Decimal(total or 0)), ZERO)

    def cogs_by_day(self, start: date, end: date) -> dict[date, Decimal]:
        """daily_cogs for every day in [start, end]."""
        if end < start:
            raise ValueError(f"end {end} is before start {start}")
        result: dict[date, Decimal] = {}
        day = start
        while day <= end:
            result[day] = self.daily_cogs(day)
            day += timedelta(days=1)
        return result
