"""
CogsAllocationEngine -- apply cost of goods sold to shipped order lines.

Responsibility:
    For one order line: check eligibility, explode bundles into components,
    plan a FIFO draw for every component, then persist claims, layer
    decrements and allocation rows.  For a batch: do that for every line in
    a deterministic order and aggregate the outcomes.

Architecture position:
    Services -- orchestrates BundleResolver, FifoAllocator and
    AverageCostService over pure engines.

Invariants enforced:
    - Atomicity per order: everything for one order line runs inside one
      savepoint (``session.begin_nested``).  Every component is planned
      before any write, and any failure rolls the savepoint back, so a
      failed order writes zero rows.
    - Idempotence: a ``cogs_allocation_claims`` row is inserted first for
      each component.  The unique constraint turns a second allocation of
      the same (order, line sku, component) into IntegrityError, reported
      as ``already_allocated``.  The claim prefetch is only a fast path.
    - Determinism: batches run in (shipped_at, order_id, sku) order.
    - Quantity conservation: allocation rows record exactly the draws
      committed to layers.

Failure modes:
    - Skips (not failures): cancelled, not_shipped, missing_sku,
      invalid_qty, already_allocated.
    - Per-order failures: ItemNotFoundError, ConfigurationError,
      InsufficientStockError, DataIntegrityError, SnapshotNotFoundError
      (AVG with no average yet).
    - Database errors are not caught here and fail the whole run.

Audit relevance:
    Every order outcome is logged (``cogs_order_allocated``,
    ``cogs_order_skipped``, ``cogs_order_failed``) with the order id bound
    in LogContext, and every batch emits ``cogs_batch_completed``.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError

from costing_config.schema import CostingSettings
from costing_engines.bundle import explode
from costing_engines.fifo import FifoPlan, LayerDraw
from costing_engines.order_status import cogs_skip_reason
from costing_kernel.domain.values import (
    CostMethod,
    OrderLine,
    SkipReason,
    as_utc,
    business_date,
)
from costing_kernel.exceptions import (
    AlreadyAllocatedError,
    CostingError,
    DataIntegrityError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.cogs import ORIGINAL_REFERENCE, CogsAllocation, CogsAllocationClaim
from costing_kernel.selectors.cogs_selector import ClaimKey, CogsSelector
from costing_kernel.services.base import BaseService
from costing_kernel.services.sequence_service import SequenceService
from costing_services.average_cost import AverageCostService
from costing_services.bundle_resolver import BundleResolver
from costing_services.fifo_allocator import FifoAllocator

logger = get_logger("services.cogs_engine")


class OutcomeStatus(str, Enum):
    ALLOCATED = "allocated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ComponentAllocation:
    """What one component of an order line consumed."""

    sku: str
    quantity: Decimal
    total_cost: Decimal
    draws: tuple[LayerDraw, ...]


@dataclass(frozen=True)
class OrderOutcome:
    """Result of applying COGS to one order line."""

    order_id: str
    sku: str | None
    status: OutcomeStatus
    skip_reason: SkipReason | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_detail: dict[str, Any] = field(default_factory=dict)
    components: tuple[ComponentAllocation, ...] = ()

    @property
    def total_cost(self) -> Decimal:
        return sum((c.total_cost for c in self.components), Decimal("0"))


@dataclass(frozen=True)
class BatchResult:
    """
    Aggregate of a batch run.

    Guarantees:
        - total == successful + failed_count + skipped_total.
        - eligible == successful + failed_count.
    """

    total: int
    eligible: int
    successful: int
    skipped: dict[str, int]
    failed: tuple[OrderOutcome, ...]
    outcomes: tuple[OrderOutcome, ...]
    duration_ms: float = 0.0

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def total_cost(self) -> Decimal:
        return sum((o.total_cost for o in self.outcomes), Decimal("0"))


_LATEST = datetime.max.replace(tzinfo=timezone.utc)


def batch_sort_key(order: OrderLine) -> tuple[datetime, str, str]:
    """(shipped_at, order_id, sku); unshipped lines sort last."""
    shipped = as_utc(order.shipped_at) if order.shipped_at else _LATEST
    return (shipped, order.order_id, order.sku or "")


def _error_detail(exc: CostingError) -> dict[str, Any]:
    return {k: v for k, v in vars(exc).items() if not k.startswith("_")}


class CogsAllocationEngine(BaseService):
    """
    Applies COGS per order line and per batch.

    Contract:
        Callers own the outer transaction.  The engine uses one savepoint
        per order line and never commits.
    """

    def __init__(
        self,
        session,
        clock=None,
        actor_id=None,
        settings: CostingSettings | None = None,
        resolver: BundleResolver | None = None,
    ):
        super().__init__(session, clock, actor_id)
        self.settings = settings or CostingSettings()
        self.resolver = resolver or BundleResolver(session, self.settings.query_chunk_size)
        self.allocator = FifoAllocator(session, self.clock, actor_id)
        self.average_cost = AverageCostService(
            session, self.clock, actor_id, business_timezone=self.settings.business_timezone
        )
        self.selector = CogsSelector(session, self.settings.business_timezone)
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Single order
    # ------------------------------------------------------------------

    def apply_cogs(
        self,
        order: OrderLine,
        method: CostMethod | None = None,
        known_claims: set[ClaimKey] | None = None,
    ) -> OrderOutcome:
        """
        Apply COGS to one shipped, non-cancelled order line.

        Args:
            order: The order line.
            method: FIFO or AVG valuation; defaults to settings.
            known_claims: Prefetched (order_id, line_sku, sku) claims.  When
                omitted the claims of this order are queried.

        Returns:
            OrderOutcome with status allocated, skipped or failed.
        """
        method = method or self.settings.default_method

        with LogContext.bind(order_id=order.order_id):
            reason = cogs_skip_reason(order, self.settings.cancelled_statuses)
            if reason is not None:
                return self._skipped(order, reason)

            if known_claims is None:
                known_claims = self.selector.claimed_keys(
                    [order.order_id], self.settings.query_chunk_size
                )

            try:
                with self.session.begin_nested():
                    components = self._allocate(order, method, known_claims)
            except AlreadyAllocatedError:
                return self._skipped(order, SkipReason.ALREADY_ALLOCATED)
            except CostingError as exc:
                return self._failed(order, exc)

            for component in components:
                known_claims.add((order.order_id, order.sku.strip(), component.sku))

            logger.info(
                "cogs_order_allocated",
                extra={
                    "sku": order.sku,
                    "method": method.value,
                    "component_count": len(components),
                    "total_cost": sum((c.total_cost for c in components), Decimal("0")),
                },
            )
            return OrderOutcome(
                order_id=order.order_id,
                sku=order.sku,
                status=OutcomeStatus.ALLOCATED,
                components=tuple(components),
            )

    def _allocate(
        self,
        order: OrderLine,
        method: CostMethod,
        known_claims: set[ClaimKey],
    ) -> list[ComponentAllocation]:
        line_sku = order.sku.strip()
        quantity = Decimal(order.quantity)
        shipped_at = as_utc(order.shipped_at)
        ship_day = business_date(shipped_at, self.settings.business_timezone)

        resolved = self.resolver.resolve(line_sku)
        pending = [
            (sku, required)
            for sku, required in explode(resolved, quantity)
            if (order.order_id, line_sku, sku) not in known_claims
        ]
        if not pending:
            raise AlreadyAllocatedError(order.order_id, line_sku)

        # Plan every component before writing anything
        plans: list[FifoPlan] = []
        for sku, required in pending:
            plan = self.allocator.plan(sku, required)
            if method == CostMethod.AVG:
                plan = plan.valued_at(self.average_cost.average_cost_as_of(sku, ship_day))
            plans.append(plan)

        claims = [
            CogsAllocationClaim(
                order_id=order.order_id,
                line_sku=line_sku,
                sku=plan.sku,
                is_reversal=False,
                reference=ORIGINAL_REFERENCE,
                line_quantity=quantity,
                method=method.value,
                created_by_id=self.actor_id,
            )
            for plan in plans
        ]
        self.session.add_all(claims)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise AlreadyAllocatedError(order.order_id, line_sku) from exc

        components: list[ComponentAllocation] = []
        for plan, claim in zip(plans, claims):
            self.allocator.commit(plan)
            for draw in plan.draws:
                self.session.add(
                    CogsAllocation(
                        claim_id=claim.id,
                        order_id=order.order_id,
                        line_sku=line_sku,
                        sku=plan.sku,
                        recognized_at=shipped_at,
                        method=method.value,
                        qty=draw.quantity,
                        unit_cost_used=draw.unit_cost,
                        amount=draw.amount,
                        layer_id=draw.layer_id,
                        is_reversal=False,
                        reference=ORIGINAL_REFERENCE,
                        sequence=self._sequences.next_value(SequenceService.COGS_ALLOCATION),
                        created_by_id=self.actor_id,
                    )
                )
            components.append(
                ComponentAllocation(
                    sku=plan.sku,
                    quantity=plan.quantity,
                    total_cost=plan.total_cost,
                    draws=plan.draws,
                )
            )
        self.session.flush()

        for plan in plans:
            self.average_cost.refresh(plan.sku, since=ship_day)
        return components

    def _skipped(self, order: OrderLine, reason: SkipReason) -> OrderOutcome:
        logger.info("cogs_order_skipped", extra={"sku": order.sku, "reason": reason.value})
        return OrderOutcome(
            order_id=order.order_id,
            sku=order.sku,
            status=OutcomeStatus.SKIPPED,
            skip_reason=reason,
        )

    def _failed(self, order: OrderLine, exc: CostingError) -> OrderOutcome:
        log = logger.error if isinstance(exc, DataIntegrityError) else logger.warning
        log(
            "cogs_order_failed",
            extra={"sku": order.sku, "error_code": exc.code},
            exc_info=exc,
        )
        return OrderOutcome(
            order_id=order.order_id,
            sku=order.sku,
            status=OutcomeStatus.FAILED,
            error_code=exc.code,
            error_message=str(exc),
            error_detail=_error_detail(exc),
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def apply_cogs_batch(
        self,
        orders: Iterable[OrderLine],
        method: CostMethod | None = None,
    ) -> BatchResult:
        """
        Apply COGS to many order lines; one line's failure never stops the rest.

        Postconditions:
            - Lines are processed in batch_sort_key order regardless of
              input order.
            - Returns counts for every outcome even when some lines fail.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: foundational data could not be
                read or written; the run as a whole has failed.
        """
        method = method or self.settings.default_method
        ordered = sorted(orders, key=batch_sort_key)
        t0 = time.monotonic()

        known_claims = self.selector.claimed_keys(
            (o.order_id for o in ordered), self.settings.query_chunk_size
        )
        self.resolver.preload(o.sku.strip() for o in ordered if o.sku and o.sku.strip())

        outcomes = [self.apply_cogs(order, method, known_claims) for order in ordered]

        skipped = Counter(
            o.skip_reason.value for o in outcomes if o.status == OutcomeStatus.SKIPPED
        )
        failed = tuple(o for o in outcomes if o.status == OutcomeStatus.FAILED)
        successful = sum(1 for o in outcomes if o.status == OutcomeStatus.ALLOCATED)
        duration_ms = round((time.monotonic() - t0) * 1000, 2)

        result = BatchResult(
            total=len(outcomes),
            eligible=successful + len(failed),
            successful=successful,
            skipped=dict(skipped),
            failed=failed,
            outcomes=tuple(outcomes),
            duration_ms=duration_ms,
        )
        logger.info(
            "cogs_batch_completed",
            extra={
                "method": method.value,
                "total": result.total,
                "eligible": result.eligible,
                "successful": result.successful,
                "skipped": result.skipped,
                "failed": result.failed_count,
                "duration_ms": duration_ms,
            },
        )
        return result
