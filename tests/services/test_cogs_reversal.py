"""
Tests for CogsReversalService.

Covers:
- Full and partial returns, oldest draw first
- Restoration onto the original layer
- RETURN layer when the original layer is no longer live
- Guard rails: nothing to reverse, over-return, duplicate reference
- Return types: refund-only and cancel-before-ship
- Undoing a return
- Daily COGS and quantity conservation after returns
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from costing_kernel.domain.values import RefType, ReturnType
from costing_kernel.exceptions import (
    AlreadyReversedError,
    InsufficientStockError,
    InvalidQuantityError,
    NothingToReverseError,
    ReturnAlreadyUndoneError,
    ReturnExceedsAllocationError,
    ReturnNotFoundError,
)
from costing_kernel.models.cogs import CogsAllocation
from costing_kernel.models.inventory import ReceiptLayer
from costing_kernel.models.returns import InventoryReturn, ReturnAction
from costing_kernel.selectors.cogs_selector import CogsSelector
from costing_kernel.selectors.inventory_selector import InventorySelector
from tests.factories import shipped_line, utc

RETURNED_AT = utc(2024, 1, 11)
UNDONE_AT = utc(2024, 1, 12)


@pytest.fixture
def shipped_order(cogs_engine, stock_item):
    """O1 ships 15 A on 10 Jan: 10 from the 5.00 layer, 5 from the 7.00 layer."""
    layers = stock_item(
        "A",
        (Decimal("10"), Decimal("5"), utc(2024, 1, 1)),
        (Decimal("10"), Decimal("7"), utc(2024, 1, 2)),
    )
    cogs_engine.apply_cogs(shipped_line("O1", "A", "15"))
    return layers


class TestFullReturn:

    def test_restores_every_draw(self, session, reversal_service, shipped_order):
        first, second = shipped_order

        result = reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1")

        assert result.quantity == Decimal("15")
        assert result.amount == Decimal("85.00")
        assert first.qty_remaining == Decimal("10")
        assert second.qty_remaining == Decimal("10")
        assert reversal_service.outstanding_quantity("O1", "A") == Decimal("0")

    def test_oldest_draw_undone_first(self, reversal_service, shipped_order):
        first, second = shipped_order

        result = reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1")

        restored = result.components[0].restored
        assert [r.layer_id for r in restored] == [first.id, second.id]
        assert all(r.restored_layer_id == r.layer_id for r in restored)
        assert not any(r.synthesized for r in restored)

    def test_reversal_rows_are_negative(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1")

        rows = session.execute(
            select(CogsAllocation).where(CogsAllocation.is_reversal.is_(True))
        ).scalars().all()
        assert sorted(r.qty for r in rows) == [Decimal("-10"), Decimal("-5")]
        assert sum(r.amount for r in rows) == Decimal("-85.00")
        assert all(r.reference == "RMA-1" for r in rows)
        assert all(r.recognized_at is not None for r in rows)

    def test_nothing_left_after_full_return(self, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1")

        with pytest.raises(NothingToReverseError):
            reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-2")


class TestPartialReturn:

    def test_partial_return_takes_oldest_layer(self, reversal_service, shipped_order):
        first, second = shipped_order

        result = reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3")
        )

        assert result.amount == Decimal("15.00")
        assert first.qty_remaining == Decimal("3")
        assert second.qty_remaining == Decimal("5")
        assert reversal_service.outstanding_quantity("O1", "A") == Decimal("12")

    def test_successive_partials_settle_exactly(self, reversal_service, shipped_order):
        first, second = shipped_order
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))

        result = reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="RMA-2", quantity=Decimal("7")
        )

        assert result.amount == Decimal("35.00")
        assert first.qty_remaining == Decimal("10")
        assert second.qty_remaining == Decimal("5")

        final = reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-3")
        assert final.quantity == Decimal("5")
        assert final.amount == Decimal("35.00")

    def test_bundle_partial_return(self, session, cogs_engine, reversal_service, stock_item, bundle_item):
        stock_item("X", (Decimal("10"), Decimal("3"), utc(2024, 1, 1)))
        stock_item("Y", (Decimal("10"), Decimal("4"), utc(2024, 1, 1)))
        bundle_item("B", [("X", Decimal("2")), ("Y", Decimal("1"))])
        cogs_engine.apply_cogs(shipped_line("O9", "B", "3"))

        result = reversal_service.reverse_order(
            "O9", "B", RETURNED_AT, reference="RMA-9", quantity=Decimal("1")
        )

        assert {c.sku: c.quantity for c in result.components} == {
            "X": Decimal("2"),
            "Y": Decimal("1"),
        }
        selector = InventorySelector(session)
        assert selector.on_hand("X") == Decimal("6")
        assert selector.on_hand("Y") == Decimal("8")
        assert reversal_service.outstanding_quantity("O9", "B") == Decimal("2")


class TestGuards:

    def test_unallocated_line(self, reversal_service, shipped_order):
        with pytest.raises(NothingToReverseError):
            reversal_service.reverse_order("NOPE", "A", RETURNED_AT, reference="RMA-1")

    def test_over_return(self, reversal_service, shipped_order):
        with pytest.raises(ReturnExceedsAllocationError) as exc_info:
            reversal_service.reverse_order(
                "O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("16")
            )

        assert exc_info.value.outstanding == Decimal("15")

    def test_duplicate_reference(self, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("1"))

        with pytest.raises(AlreadyReversedError):
            reversal_service.reverse_order(
                "O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("1")
            )

    @pytest.mark.parametrize("reference", ["", "   "])
    def test_reference_required(self, reversal_service, shipped_order, reference):
        with pytest.raises(InvalidQuantityError):
            reversal_service.reverse_order("O1", "A", RETURNED_AT, reference=reference)

    def test_non_positive_quantity(self, reversal_service, shipped_order):
        with pytest.raises(InvalidQuantityError):
            reversal_service.reverse_order(
                "O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("0")
            )


class TestReturnLayer:

    def test_voided_origin_gets_return_layer(self, session, reversal_service, shipped_order):
        """A layer taken out of service after the sale cannot take stock back."""
        first, second = shipped_order
        first.is_voided = True
        session.flush()

        result = reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("2")
        )

        (restored,) = result.components[0].restored
        assert restored.synthesized
        assert restored.layer_id == first.id
        returned = session.get(ReceiptLayer, restored.restored_layer_id)
        assert returned.ref_type == RefType.RETURN.value
        assert returned.ref_id == "RMA-1"
        assert returned.qty_remaining == Decimal("2")
        assert returned.unit_cost == Decimal("5")


class TestReporting:

    def test_daily_cogs_nets_returns(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order(
            "O1", "A", utc(2024, 1, 10, 13), reference="RMA-1", quantity=Decimal("5")
        )

        selector = CogsSelector(session)
        assert selector.daily_cogs(date(2024, 1, 10)) == Decimal("60.00")

    def test_return_only_day_is_floored_at_zero(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))

        by_day = CogsSelector(session).cogs_by_day(date(2024, 1, 10), date(2024, 1, 11))

        assert by_day == {date(2024, 1, 10): Decimal("85.00"), date(2024, 1, 11): Decimal("0")}

    def test_quantity_conserved_after_returns(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("4"))

        layers = session.execute(select(ReceiptLayer).where(ReceiptLayer.sku == "A")).scalars()
        consumed = sum((layer.qty_received - layer.qty_remaining for layer in layers), Decimal("0"))
        assert consumed == CogsSelector(session).net_allocated_qty("A") == Decimal("11")


class TestReturnTypes:

    def test_every_return_is_logged(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"), note="damaged box"
        )

        (record,) = session.execute(select(InventoryReturn)).scalars().all()
        assert record.return_type == ReturnType.RETURN_RECEIVED
        assert record.action_type == ReturnAction.RETURN
        assert record.quantity == Decimal("3")
        assert record.note == "damaged box"

    def test_refund_only_leaves_stock_and_cogs(self, session, reversal_service, shipped_order):
        first, second = shipped_order

        result = reversal_service.reverse_order(
            "O1",
            "A",
            RETURNED_AT,
            reference="REF-1",
            quantity=Decimal("2"),
            return_type=ReturnType.REFUND_ONLY,
        )

        assert result.components == ()
        assert result.amount == Decimal("0")
        assert first.qty_remaining == Decimal("0")
        assert second.qty_remaining == Decimal("5")
        reversals = session.execute(
            select(CogsAllocation).where(CogsAllocation.is_reversal.is_(True))
        ).scalars().all()
        assert reversals == []
        assert reversal_service.outstanding_quantity("O1", "A") == Decimal("15")
        assert reversal_service.returnable_quantity("O1", "A") == Decimal("13")

    def test_refund_only_limits_later_returns(self, reversal_service, shipped_order):
        reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="REF-1", quantity=Decimal("5"),
            return_type="REFUND_ONLY",
        )

        with pytest.raises(ReturnExceedsAllocationError) as exc_info:
            reversal_service.reverse_order(
                "O1", "A", RETURNED_AT, reference="RMA-2", quantity=Decimal("11")
            )

        assert exc_info.value.outstanding == Decimal("10")

    def test_cancel_before_ship_reverses_allocation(self, reversal_service, shipped_order):
        first, second = shipped_order

        result = reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="CXL-1", return_type=ReturnType.CANCEL_BEFORE_SHIP
        )

        assert result.amount == Decimal("85.00")
        assert first.qty_remaining == Decimal("10")
        assert second.qty_remaining == Decimal("10")

    def test_unknown_return_type_rejected(self, reversal_service, shipped_order):
        with pytest.raises(ValueError):
            reversal_service.reverse_order(
                "O1", "A", RETURNED_AT, reference="RMA-1", return_type="EXCHANGE"
            )


class TestUndo:

    def test_undo_takes_restored_stock_back(self, session, reversal_service, shipped_order):
        first, second = shipped_order
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))

        result = reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

        assert result.quantity == Decimal("3")
        assert result.amount == Decimal("15.00")
        assert first.qty_remaining == Decimal("0")
        assert second.qty_remaining == Decimal("5")
        assert reversal_service.outstanding_quantity("O1", "A") == Decimal("15")
        assert CogsSelector(session).net_allocated_qty("A") == Decimal("15")

    def test_undo_is_logged_against_the_return(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))

        reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

        records = {
            r.action_type: r for r in session.execute(select(InventoryReturn)).scalars()
        }
        undo = records[ReturnAction.UNDO.value]
        assert undo.reversed_return_id == records[ReturnAction.RETURN.value].id
        assert undo.quantity == Decimal("3")

    def test_undo_recognizes_cogs_on_undo_day(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))

        reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

        assert CogsSelector(session).daily_cogs(date(2024, 1, 12)) == Decimal("15.00")

    def test_line_can_be_returned_again_after_undo(self, reversal_service, shipped_order):
        first, second = shipped_order
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))
        reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

        result = reversal_service.reverse_order("O1", "A", UNDONE_AT, reference="RMA-2")

        assert result.quantity == Decimal("15")
        assert result.amount == Decimal("85.00")
        assert first.qty_remaining == Decimal("10")
        assert second.qty_remaining == Decimal("10")

    def test_undo_drains_return_layer(self, session, reversal_service, shipped_order):
        first, _ = shipped_order
        first.is_voided = True
        session.flush()
        result = reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("2")
        )
        (restored,) = result.components[0].restored

        undone = reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

        assert undone.amount == Decimal("10.00")
        assert session.get(ReceiptLayer, restored.restored_layer_id).qty_remaining == Decimal("0")

    def test_undo_refund_only_frees_returnable_quantity(self, session, reversal_service, shipped_order):
        reversal_service.reverse_order(
            "O1", "A", RETURNED_AT, reference="REF-1", quantity=Decimal("5"),
            return_type=ReturnType.REFUND_ONLY,
        )

        result = reversal_service.undo_reversal("O1", "A", "REF-1", undone_at=UNDONE_AT)

        assert result.amount == Decimal("0")
        assert reversal_service.returnable_quantity("O1", "A") == Decimal("15")
        assert session.execute(
            select(CogsAllocation).where(CogsAllocation.reference.like("UNDO:%"))
        ).scalars().all() == []

    def test_undo_twice_rejected(self, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))
        reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

        with pytest.raises(ReturnAlreadyUndoneError):
            reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

    def test_undo_unknown_return(self, reversal_service, shipped_order):
        with pytest.raises(ReturnNotFoundError):
            reversal_service.undo_reversal("O1", "A", "RMA-404", undone_at=UNDONE_AT)

    def test_undo_fails_when_restored_stock_was_sold(self, cogs_engine, reversal_service, shipped_order):
        reversal_service.reverse_order("O1", "A", RETURNED_AT, reference="RMA-1", quantity=Decimal("3"))
        cogs_engine.apply_cogs(shipped_line("O2", "A", "8", shipped_at=utc(2024, 1, 11, 18)))

        with pytest.raises(InsufficientStockError):
            reversal_service.undo_reversal("O1", "A", "RMA-1", undone_at=UNDONE_AT)

        assert reversal_service.outstanding_quantity("O1", "A") == Decimal("12")
