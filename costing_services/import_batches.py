"""
ImportBatchService -- provenance, rollback and purge of bulk loads.

Responsibility:
    Open a batch for a file (hash-based duplicate detection), attach the
    ad-spend and wallet rows it produces, close it as success or failed, and
    undo it later as a compensating transaction.

Architecture position:
    Services -- flushes within the caller's transaction so a rollback or
    purge lands atomically.

Invariants enforced:
    - Status transitions: processing -> success | failed; success | failed
      -> rolled_back.  Purge is allowed from any status but processing.
    - Rollback soft-deletes derived rows (deleted_at) and appends
      "Rolled back at <ts>" to the batch notes; purge hard-deletes rows and
      the batch itself.
    - A row whose source_row_hash already exists among live rows is
      skipped, never inserted twice.

Failure modes:
    - ImportBatchNotFoundError, DuplicateImportError, ImportBatchStateError.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update

from costing_config.schema import ImportSettings
from costing_kernel.exceptions import (
    DuplicateImportError,
    ImportBatchNotFoundError,
    ImportBatchStateError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.imports import (
    AdDailyPerformance,
    ImportBatch,
    ImportBatchStatus,
    WalletLedgerEntry,
)
from costing_kernel.services.base import BaseService
from costing_kernel.utils.hashing import hash_file_content, hash_payload

logger = get_logger("services.import_batches")

_DERIVED_TABLES = (AdDailyPerformance, WalletLedgerEntry)


@dataclass(frozen=True)
class AttachResult:
    inserted: int
    skipped: int


@dataclass(frozen=True)
class BatchCleanupResult:
    batch_id: UUID
    status: ImportBatchStatus
    rows_affected: dict[str, int]


class ImportBatchService(BaseService):
    """Lifecycle of import batches and their derived rows."""

    def __init__(self, session, clock=None, actor_id=None, settings: ImportSettings | None = None):
        super().__init__(session, clock, actor_id)
        self.settings = settings or ImportSettings()

    def get(self, batch_id: UUID) -> ImportBatch:
        batch = self.session.get(ImportBatch, batch_id)
        if batch is None:
            raise ImportBatchNotFoundError(str(batch_id))
        return batch

    def begin(
        self,
        marketplace: str,
        report_type: str,
        file_name: str,
        content: bytes | str,
        row_count: int = 0,
        allow_duplicate: bool | None = None,
    ) -> ImportBatch:
        """
        Open a batch in ``processing``.

        Raises:
            DuplicateImportError: the same content already imported
                successfully for this report type.
        """
        file_hash = hash_file_content(content)
        allow = self.settings.allow_duplicate_files if allow_duplicate is None else allow_duplicate
        if not allow:
            existing = self.session.execute(
                select(ImportBatch.id).where(
                    ImportBatch.file_hash == file_hash,
                    ImportBatch.report_type == report_type,
                    ImportBatch.status == ImportBatchStatus.SUCCESS.value,
                )
            ).scalars().first()
            if existing is not None:
                raise DuplicateImportError(file_hash, str(existing))

        batch = ImportBatch(
            marketplace=marketplace,
            report_type=report_type,
            file_name=file_name,
            file_hash=file_hash,
            row_count=row_count,
            status=ImportBatchStatus.PROCESSING.value,
            created_by_id=self.actor_id,
        )
        self.session.add(batch)
        self.session.flush()
        logger.info(
            "import_batch_started",
            extra={
                "batch_id": batch.id,
                "report_type": report_type,
                "file_name": file_name,
                "row_count": row_count,
            },
        )
        return batch

    def _require_status(self, batch: ImportBatch, allowed: set[ImportBatchStatus], action: str) -> None:
        if ImportBatchStatus(batch.status) not in allowed:
            raise ImportBatchStateError(str(batch.id), str(batch.status), action)

    def _live_hashes(self, model, hashes: list[str]) -> set[str]:
        if not hashes:
            return set()
        return set(
            self.session.execute(
                select(model.source_row_hash).where(
                    model.source_row_hash.in_(hashes),
                    model.deleted_at.is_(None),
                )
            ).scalars()
        )

    def _attach(self, batch_id: UUID, model, rows: Iterable[Mapping[str, Any]]) -> AttachResult:
        batch = self.get(batch_id)
        self._require_status(batch, {ImportBatchStatus.PROCESSING}, "attach rows to")

        prepared = [(hash_payload(dict(row)), dict(row)) for row in rows]
        seen = self._live_hashes(model, [h for h, _ in prepared])
        inserted = skipped = 0
        for row_hash, row in prepared:
            if row_hash in seen:
                skipped += 1
                continue
            seen.add(row_hash)
            self.session.add(
                model(
                    import_batch_id=batch.id,
                    source_row_hash=row_hash,
                    created_by_id=self.actor_id,
                    **row,
                )
            )
            inserted += 1
        self.session.flush()
        return AttachResult(inserted=inserted, skipped=skipped)

    def attach_ad_rows(self, batch_id: UUID, rows: Iterable[Mapping[str, Any]]) -> AttachResult:
        """Rows: ad_date, campaign_name, spend, and optional orders, revenue."""
        return self._attach(batch_id, AdDailyPerformance, rows)

    def attach_wallet_entries(self, batch_id: UUID, rows: Iterable[Mapping[str, Any]]) -> AttachResult:
        """Rows: wallet_name, txn_date, direction, amount, and optional description."""
        return self._attach(batch_id, WalletLedgerEntry, rows)

    def complete(
        self,
        batch_id: UUID,
        inserted: int = 0,
        updated: int = 0,
        skipped: int = 0,
        errors: int = 0,
    ) -> ImportBatch:
        batch = self.get(batch_id)
        self._require_status(batch, {ImportBatchStatus.PROCESSING}, "complete")
        batch.inserted_count = inserted
        batch.updated_count = updated
        batch.skipped_count = skipped
        batch.error_count = errors
        batch.status = ImportBatchStatus.SUCCESS.value
        batch.completed_at = self.clock.now_utc()
        self.session.flush()
        logger.info(
            "import_batch_completed",
            extra={"batch_id": batch.id, "inserted": inserted, "skipped": skipped, "errors": errors},
        )
        return batch

    def fail(self, batch_id: UUID, message: str) -> ImportBatch:
        batch = self.get(batch_id)
        self._require_status(batch, {ImportBatchStatus.PROCESSING}, "fail")
        batch.status = ImportBatchStatus.FAILED.value
        batch.completed_at = self.clock.now_utc()
        batch.append_note(message)
        self.session.flush()
        logger.warning("import_batch_failed", extra={"batch_id": batch.id, "reason": message})
        return batch

    def rollback(self, batch_id: UUID) -> BatchCleanupResult:
        """Soft-delete derived rows and mark the batch rolled back."""
        batch = self.get(batch_id)
        self._require_status(
            batch, {ImportBatchStatus.SUCCESS, ImportBatchStatus.FAILED}, "roll back"
        )
        now = self.clock.now_utc()

        with LogContext.bind(batch_id=str(batch.id)):
            affected: dict[str, int] = {}
            for model in _DERIVED_TABLES:
                result = self.session.execute(
                    update(model)
                    .where(model.import_batch_id == batch.id, model.deleted_at.is_(None))
                    .values(deleted_at=now)
                    .execution_options(synchronize_session="fetch")
                )
                affected[model.__tablename__] = result.rowcount

            batch.status = ImportBatchStatus.ROLLED_BACK.value
            batch.append_note(f"Rolled back at {now.isoformat()}")
            self.session.flush()
            logger.info("import_batch_rolled_back", extra={"rows_affected": affected})

        return BatchCleanupResult(batch.id, ImportBatchStatus.ROLLED_BACK, affected)

    def purge(self, batch_id: UUID) -> BatchCleanupResult:
        """Hard-delete derived rows and the batch row."""
        batch = self.get(batch_id)
        if ImportBatchStatus(batch.status) == ImportBatchStatus.PROCESSING:
            raise ImportBatchStateError(str(batch.id), str(batch.status), "purge")

        with LogContext.bind(batch_id=str(batch.id)):
            affected: dict[str, int] = {}
            for model in _DERIVED_TABLES:
                result = self.session.execute(
                    delete(model)
                    .where(model.import_batch_id == batch.id)
                    .execution_options(synchronize_session="fetch")
                )
                affected[model.__tablename__] = result.rowcount

            purged_id = batch.id
            self.session.delete(batch)
            self.session.flush()
            affected[ImportBatch.__tablename__] = 1
            logger.info("import_batch_purged", extra={"rows_affected": affected})

        return BatchCleanupResult(purged_id, ImportBatchStatus.DELETED, affected)

    def live_ad_spend(self, start: date, end: date) -> Decimal:
        """Sum of spend over live (not rolled back) ad rows in [start, end]."""
        total = self.session.execute(
            select(AdDailyPerformance.spend).where(
                AdDailyPerformance.ad_date >= start,
                AdDailyPerformance.ad_date <= end,
                AdDailyPerformance.deleted_at.is_(None),
            )
        ).scalars()
        return sum(total, Decimal("0"))
