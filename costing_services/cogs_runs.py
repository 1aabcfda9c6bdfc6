"""
CogsRunService -- date-range COGS application with a persisted run log.

Responsibility:
    Load every sales order line shipped within a business-date range, run
    ``CogsAllocationEngine.apply_cogs_batch`` over them and record the run
    (counts, timing) plus one item per skipped or failed line.

Architecture position:
    Services -- the entry point used by scheduled or operator-triggered
    "apply COGS" actions.

Failure modes:
    - ValueError for an inverted date range.
    - Database errors roll back every allocation of the run, mark the run
      FAILED with the error message and propagate.  The run row itself
      stays in the session so the caller can commit it.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from costing_config.schema import CostingSettings
from costing_kernel.domain.values import CostMethod, OrderLine, business_day_bounds
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.cogs import CogsApplyRun, CogsApplyRunItem, RunStatus
from costing_kernel.models.sales import SalesOrder
from costing_kernel.services.base import BaseService
from costing_services.cogs_engine import BatchResult, CogsAllocationEngine, OutcomeStatus

logger = get_logger("services.cogs_runs")


class CogsRunService(BaseService):
    """Applies COGS to a shipped-date range and logs the run."""

    def __init__(self, session, clock=None, actor_id=None, settings: CostingSettings | None = None):
        super().__init__(session, clock, actor_id)
        self.settings = settings or CostingSettings()
        self.engine = CogsAllocationEngine(session, self.clock, actor_id, self.settings)

    def load_shipped_orders(self, start: date, end: date) -> list[OrderLine]:
        """Order lines shipped within [start, end] business days."""
        range_start, _ = business_day_bounds(start, self.settings.business_timezone)
        _, range_end = business_day_bounds(end, self.settings.business_timezone)
        rows = self.session.execute(
            select(SalesOrder)
            .where(
                SalesOrder.shipped_at >= range_start,
                SalesOrder.shipped_at < range_end,
            )
            .order_by(SalesOrder.shipped_at, SalesOrder.order_id, SalesOrder.sku)
        ).scalars()
        return [row.to_order_line() for row in rows]

    def apply_range(
        self,
        start: date,
        end: date,
        method: CostMethod | None = None,
    ) -> tuple[CogsApplyRun, BatchResult]:
        """
        Apply COGS to every line shipped in [start, end].

        Returns:
            The persisted run and the batch result.
        """
        if end < start:
            raise ValueError(f"end {end} is before start {start}")
        method = method or self.settings.default_method

        run = CogsApplyRun(
            start_date=start,
            end_date=end,
            method=method.value,
            status=RunStatus.RUNNING.value,
            started_at=self.clock.now_utc(),
            created_by_id=self.actor_id,
        )
        self.session.add(run)
        self.session.flush()

        with LogContext.bind(run_id=str(run.id)):
            logger.info(
                "cogs_run_started",
                extra={"start_date": start, "end_date": end, "method": method.value},
            )
            savepoint = self.session.begin_nested()
            try:
                orders = self.load_shipped_orders(start, end)
                result = self.engine.apply_cogs_batch(orders, method)
                savepoint.commit()
            except SQLAlchemyError as exc:
                if savepoint.is_active:
                    savepoint.rollback()
                run.status = RunStatus.FAILED.value
                run.error_message = str(exc)
                run.finished_at = self.clock.now_utc()
                self.session.flush()
                logger.error("cogs_run_failed", exc_info=True)
                raise

            for outcome in result.outcomes:
                if outcome.status == OutcomeStatus.ALLOCATED:
                    continue
                self.session.add(
                    CogsApplyRunItem(
                        run_id=run.id,
                        order_id=outcome.order_id,
                        sku=outcome.sku,
                        status=outcome.status.value,
                        reason=(
                            outcome.skip_reason.value
                            if outcome.skip_reason is not None
                            else outcome.error_code
                        ),
                        message=outcome.error_message,
                        created_by_id=self.actor_id,
                    )
                )

            run.total = result.total
            run.eligible = result.eligible
            run.successful = result.successful
            run.skipped = result.skipped_total
            run.failed = result.failed_count
            run.status = RunStatus.COMPLETED.value
            run.finished_at = self.clock.now_utc()
            self.session.flush()

            logger.info(
                "cogs_run_completed",
                extra={
                    "total": run.total,
                    "successful": run.successful,
                    "skipped": run.skipped,
                    "failed": run.failed,
                },
            )
        return run, result
