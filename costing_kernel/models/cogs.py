"""
COGS allocation models.

Responsibility:
    Persisted results of consuming (and restoring) stock for sales order
    lines, the claim rows that make allocation idempotent, and the run log of
    date-range COGS applications.

Architecture position:
    Kernel > Models.

Invariants enforced:
    - cogs_allocation_claims is unique on (order_id, line_sku, sku,
      is_reversal, reference).  This constraint, not an in-memory check, is
      what stops two writers from allocating the same order component twice.
    - A non-reversal allocation has qty > 0; a reversal has qty < 0.
    - Allocation rows are append-only; a return adds reversal rows.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.domain.values import CostMethod

# Reference value used by original (non-reversal) claims
ORIGINAL_REFERENCE = ""


class CogsAllocationClaim(TrackedBase):
    """
    Idempotence anchor for one (order, line sku, component) allocation set.

    Contract:
        Inserted inside the same savepoint as the allocation rows it
        guards.  A concurrent second insert fails with IntegrityError and the
        caller reports ``already_allocated`` instead of consuming stock twice.
        Originals use ``reference = ""``; each return uses its own reference.
    """

    __tablename__ = "cogs_allocation_claims"

    __table_args__ = (
        UniqueConstraint(
            "order_id",
            "line_sku",
            "sku",
            "is_reversal",
            "reference",
            name="uq_cogs_claims_order_component",
        ),
        Index("idx_cogs_claims_order", "order_id"),
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # SKU on the sales order line (the bundle SKU for exploded lines)
    line_sku: Mapped[str] = mapped_column(String(100), nullable=False)

    # Component SKU that was actually consumed
    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    is_reversal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    reference: Mapped[str] = mapped_column(
        String(100), default=ORIGINAL_REFERENCE, nullable=False
    )

    # Order-line quantity this claim covers (returned quantity for reversals)
    line_quantity: Mapped[Decimal] = mapped_column(nullable=False)

    method: Mapped[CostMethod] = mapped_column(String(10), nullable=False)


class CogsAllocation(TrackedBase):
    """
    One draw from (or restoration to) a receipt layer for an order line.

    Guarantees:
        - amount = qty * unit_cost_used, rounded to cents; both signed.
        - layer_id always names the layer originally drawn from; reversal
          rows also record restored_layer_id (the original layer or a
          synthesized RETURN layer).
    """

    __tablename__ = "cogs_allocations"

    __table_args__ = (
        CheckConstraint(
            "(is_reversal AND qty < 0) OR (NOT is_reversal AND qty > 0)",
            name="ck_cogs_allocations_sign",
        ),
        CheckConstraint("unit_cost_used >= 0", name="ck_cogs_allocations_unit_cost"),
        CheckConstraint("method IN ('FIFO', 'AVG')", name="ck_cogs_allocations_method"),
        Index("idx_cogs_allocations_order", "order_id", "line_sku"),
        Index("idx_cogs_allocations_recognized", "recognized_at"),
        Index("idx_cogs_allocations_sku", "sku"),
    )

    claim_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("cogs_allocation_claims.id"),
        nullable=False,
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    line_sku: Mapped[str] = mapped_column(String(100), nullable=False)

    sku: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("inventory_items.sku_internal"),
        nullable=False,
    )

    # shipped_at for originals, returned_at for reversals
    recognized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    method: Mapped[CostMethod] = mapped_column(String(10), nullable=False)

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    unit_cost_used: Mapped[Decimal] = mapped_column(nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    layer_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_receipt_layers.id"),
        nullable=True,
    )

    restored_layer_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_receipt_layers.id"),
        nullable=True,
    )

    is_reversal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    reference: Mapped[str] = mapped_column(
        String(100), default=ORIGINAL_REFERENCE, nullable=False
    )

    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        kind = "reversal" if self.is_reversal else "allocation"
        return f"<CogsAllocation {kind} {self.order_id}/{self.sku} {self.qty} @ {self.unit_cost_used}>"


class RunStatus(str, Enum):
    """Lifecycle of a COGS apply run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CogsApplyRun(TrackedBase):
    """Audit record of one date-range COGS application."""

    __tablename__ = "cogs_apply_runs"

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    method: Mapped[CostMethod] = mapped_column(String(10), nullable=False)

    status: Mapped[RunStatus] = mapped_column(
        String(20), default=RunStatus.RUNNING, nullable=False
    )

    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    eligible: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<CogsApplyRun {self.start_date}..{self.end_date} {self.status}>"


class CogsApplyRunItem(TrackedBase):
    """A skipped or failed order line within a run."""

    __tablename__ = "cogs_apply_run_items"

    __table_args__ = (Index("idx_cogs_run_items_run", "run_id"),)

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("cogs_apply_runs.id", ondelete="CASCADE"),
        nullable=False,
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    sku: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # "skipped" or "failed"
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Skip reason or error code
    reason: Mapped[str] = mapped_column(String(50), nullable=False)

    message: Mapped[str | None] = mapped_column(Text, nullable=True)
