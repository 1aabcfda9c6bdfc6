"""
Import batch provenance and the rows bulk imports derive from it.

Responsibility:
    ``ImportBatch`` records one bulk file load.  Ad-spend rows and wallet
    ledger entries point back at the batch that wrote them so a whole load
    can be rolled back (soft delete) or purged (hard delete).

Invariants enforced:
    - Status moves processing -> success | failed, and later to rolled_back.
      Purged batches are deleted outright; ``deleted`` is reported in purge
      results but never persisted.
    - Derived rows are live while ``deleted_at`` is NULL.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString


class ImportBatchStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    DELETED = "deleted"


class ImportBatch(TrackedBase):
    """Provenance record for one bulk load."""

    __tablename__ = "import_batches"

    __table_args__ = (
        Index("idx_import_batches_hash", "file_hash", "report_type"),
    )

    marketplace: Mapped[str] = mapped_column(String(50), nullable=False)

    # e.g. "ads_daily", "wallet", "sales"
    report_type: Mapped[str] = mapped_column(String(50), nullable=False)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)

    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    inserted_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[ImportBatchStatus] = mapped_column(
        String(20), default=ImportBatchStatus.PROCESSING.value, nullable=False
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ImportBatch {self.report_type} {self.file_name} {self.status}>"

    def append_note(self, note: str) -> None:
        """Append a line to the free-text audit trail."""
        self.notes = f"{self.notes}\n{note}" if self.notes else note


class AdDailyPerformance(TrackedBase):
    """One day of advertising spend for a campaign."""

    __tablename__ = "ad_daily_performance"

    __table_args__ = (
        Index("idx_ad_daily_batch", "import_batch_id"),
        Index("idx_ad_daily_row_hash", "source_row_hash"),
    )

    import_batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("import_batches.id"), nullable=False
    )

    ad_date: Mapped[date] = mapped_column(Date, nullable=False)

    campaign_name: Mapped[str] = mapped_column(String(255), nullable=False)

    spend: Mapped[Decimal] = mapped_column(nullable=False)

    orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    revenue: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    source_row_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WalletLedgerEntry(TrackedBase):
    """One movement on a marketplace or ad wallet."""

    __tablename__ = "wallet_ledger"

    __table_args__ = (
        Index("idx_wallet_ledger_batch", "import_batch_id"),
        Index("idx_wallet_ledger_row_hash", "source_row_hash"),
    )

    import_batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("import_batches.id"), nullable=False
    )

    wallet_name: Mapped[str] = mapped_column(String(100), nullable=False)

    txn_date: Mapped[date] = mapped_column(Date, nullable=False)

    # "IN" or "OUT"
    direction: Mapped[str] = mapped_column(String(3), nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    source_row_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
