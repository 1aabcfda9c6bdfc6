"""
Tests for ImportBatchService.

Covers:
- Duplicate file detection by content hash
- Row attachment with per-row de-duplication
- complete / fail transitions
- Rollback (soft delete) and purge (hard delete)
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from costing_kernel.exceptions import (
    DuplicateImportError,
    ImportBatchNotFoundError,
    ImportBatchStateError,
)
from costing_kernel.models.imports import (
    AdDailyPerformance,
    ImportBatch,
    ImportBatchStatus,
    WalletLedgerEntry,
)

CONTENT = b"date,campaign,spend\n2024-01-10,Launch,120.50\n"


def ad_row(day: int, campaign: str, spend: str) -> dict:
    return {
        "ad_date": date(2024, 1, day),
        "campaign_name": campaign,
        "spend": Decimal(spend),
    }


def wallet_row(day: int, amount: str, direction: str = "OUT") -> dict:
    return {
        "wallet_name": "Ads wallet",
        "txn_date": date(2024, 1, day),
        "direction": direction,
        "amount": Decimal(amount),
    }


@pytest.fixture
def completed_batch(import_service):
    batch = import_service.begin("shopee", "ads_daily", "ads.csv", CONTENT)
    import_service.attach_ad_rows(
        batch.id, [ad_row(10, "Launch", "120.50"), ad_row(11, "Launch", "80.00")]
    )
    import_service.attach_wallet_entries(batch.id, [wallet_row(10, "200.50")])
    import_service.complete(batch.id, inserted=3)
    return batch


class TestBegin:

    def test_new_batch_is_processing(self, import_service):
        batch = import_service.begin("shopee", "ads_daily", "ads.csv", CONTENT, row_count=1)

        assert batch.status == ImportBatchStatus.PROCESSING
        assert len(batch.file_hash) == 64
        assert batch.row_count == 1

    def test_same_content_after_success_is_duplicate(self, import_service, completed_batch):
        with pytest.raises(DuplicateImportError) as exc_info:
            import_service.begin("shopee", "ads_daily", "ads-copy.csv", CONTENT)

        assert exc_info.value.existing_batch_id == str(completed_batch.id)

    def test_other_report_type_not_duplicate(self, import_service, completed_batch):
        batch = import_service.begin("shopee", "wallet", "ads.csv", CONTENT)

        assert batch.id != completed_batch.id

    def test_allow_duplicate_override(self, import_service, completed_batch):
        batch = import_service.begin(
            "shopee", "ads_daily", "ads.csv", CONTENT, allow_duplicate=True
        )

        assert batch.status == ImportBatchStatus.PROCESSING

    def test_failed_import_can_be_retried(self, import_service):
        first = import_service.begin("shopee", "ads_daily", "ads.csv", CONTENT)
        import_service.fail(first.id, "bad header row")

        retry = import_service.begin("shopee", "ads_daily", "ads.csv", CONTENT)

        assert retry.id != first.id

    def test_unknown_batch(self, import_service):
        with pytest.raises(ImportBatchNotFoundError):
            import_service.get(uuid4())


class TestAttachRows:

    def test_duplicate_rows_skipped(self, import_service, completed_batch):
        batch = import_service.begin("shopee", "ads_daily", "ads-2.csv", b"second file")

        result = import_service.attach_ad_rows(
            batch.id,
            [
                ad_row(10, "Launch", "120.50"),
                ad_row(12, "Launch", "60.00"),
                ad_row(12, "Launch", "60.00"),
            ],
        )

        assert (result.inserted, result.skipped) == (1, 2)

    def test_trailing_zeros_do_not_change_row_identity(self, import_service, completed_batch):
        batch = import_service.begin("shopee", "ads_daily", "ads-2.csv", b"second file")

        result = import_service.attach_ad_rows(batch.id, [ad_row(11, "Launch", "80")])

        assert result.skipped == 1

    def test_attach_requires_processing(self, import_service, completed_batch):
        with pytest.raises(ImportBatchStateError):
            import_service.attach_wallet_entries(completed_batch.id, [wallet_row(12, "5")])


class TestTransitions:

    def test_complete_records_counts(self, import_service, completed_batch):
        assert completed_batch.status == ImportBatchStatus.SUCCESS
        assert completed_batch.inserted_count == 3
        assert completed_batch.completed_at is not None

    def test_fail_appends_note(self, import_service):
        batch = import_service.begin("shopee", "wallet", "wallet.csv", b"wallet")

        import_service.fail(batch.id, "unreadable amount column")

        assert batch.status == ImportBatchStatus.FAILED
        assert batch.notes == "unreadable amount column"

    def test_complete_twice_rejected(self, import_service, completed_batch):
        with pytest.raises(ImportBatchStateError) as exc_info:
            import_service.complete(completed_batch.id)

        assert exc_info.value.current_status == "success"


class TestRollback:

    def test_rollback_soft_deletes_rows(self, import_service, session, completed_batch):
        assert import_service.live_ad_spend(date(2024, 1, 1), date(2024, 1, 31)) == Decimal("200.50")

        result = import_service.rollback(completed_batch.id)

        assert result.status == ImportBatchStatus.ROLLED_BACK
        assert result.rows_affected == {"ad_daily_performance": 2, "wallet_ledger": 1}
        assert completed_batch.status == ImportBatchStatus.ROLLED_BACK
        assert completed_batch.notes.startswith("Rolled back at ")
        assert import_service.live_ad_spend(date(2024, 1, 1), date(2024, 1, 31)) == Decimal("0")
        # Rows stay for audit
        total = session.execute(select(func.count()).select_from(AdDailyPerformance)).scalar()
        assert total == 2

    def test_rows_can_be_reimported_after_rollback(self, import_service, completed_batch):
        import_service.rollback(completed_batch.id)

        again = import_service.begin("shopee", "ads_daily", "ads.csv", CONTENT)
        result = import_service.attach_ad_rows(again.id, [ad_row(10, "Launch", "120.50")])

        assert result.inserted == 1

    def test_processing_batch_cannot_roll_back(self, import_service):
        batch = import_service.begin("shopee", "ads_daily", "ads.csv", CONTENT)

        with pytest.raises(ImportBatchStateError):
            import_service.rollback(batch.id)

    def test_rollback_logs_batch_id(self, import_service, completed_batch, captured_logs):
        import_service.rollback(completed_batch.id)

        records = [r for r in captured_logs() if r["message"] == "import_batch_rolled_back"]
        assert records[0]["batch_id"] == str(completed_batch.id)


class TestPurge:

    def test_purge_removes_everything(self, import_service, session, completed_batch):
        batch_id = completed_batch.id

        result = import_service.purge(batch_id)

        assert result.status == ImportBatchStatus.DELETED
        assert result.rows_affected == {
            "ad_daily_performance": 2,
            "wallet_ledger": 1,
            "import_batches": 1,
        }
        assert session.get(ImportBatch, batch_id) is None
        assert session.execute(select(func.count()).select_from(WalletLedgerEntry)).scalar() == 0

    def test_purge_after_rollback(self, import_service, completed_batch):
        import_service.rollback(completed_batch.id)

        result = import_service.purge(completed_batch.id)

        assert result.rows_affected["ad_daily_performance"] == 2

    def test_processing_batch_cannot_be_purged(self, import_service):
        batch = import_service.begin("shopee", "ads_daily", "ads.csv", CONTENT)

        with pytest.raises(ImportBatchStateError):
            import_service.purge(batch.id)
