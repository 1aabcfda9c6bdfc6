"""
Tests for the FIFO planning engine.

Tests cover:
- Oldest-first draws across layers
- Sequence tie-break on equal receipt times
- Voided and empty layers are skipped
- All-or-nothing insufficient stock
- Integrity violations are reported, never clamped
- Re-valuation at a moving-average cost
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from costing_engines.fifo import eligible_layers, plan_fifo
from costing_kernel.exceptions import DataIntegrityError, InsufficientStockError
from tests.factories import layer_state, utc


class TestOldestFirst:
    """Draw order and amounts."""

    def test_spans_two_layers(self):
        """Layers 10@5 then 10@7, need 15: 10@5 + 5@7 = 85."""
        first, second = uuid4(), uuid4()
        layers = [
            layer_state(second, "10", "7", utc(2024, 1, 2), sequence=2),
            layer_state(first, "10", "5", utc(2024, 1, 1), sequence=1),
        ]

        plan = plan_fifo(sku="A", quantity=Decimal("15"), layers=layers)

        assert [d.layer_id for d in plan.draws] == [first, second]
        assert [d.quantity for d in plan.draws] == [Decimal("10"), Decimal("5")]
        assert plan.total_cost == Decimal("85.00")
        assert plan.draws[0].remaining_after == Decimal("0")
        assert plan.draws[1].remaining_after == Decimal("5")

    def test_exact_fit_uses_single_layer(self):
        layer = uuid4()
        plan = plan_fifo(
            sku="A",
            quantity=Decimal("4"),
            layers=[layer_state(layer, "4", "2.50", utc(2024, 1, 1))],
        )

        assert len(plan.draws) == 1
        assert plan.draws[0].amount == Decimal("10.00")
        assert plan.draws[0].remaining_after == Decimal("0")

    def test_sequence_breaks_received_at_ties(self):
        """Same timestamp: lower sequence is consumed first."""
        low, high = uuid4(), uuid4()
        same_time = utc(2024, 1, 1)
        layers = [
            layer_state(high, "5", "9", same_time, sequence=8),
            layer_state(low, "5", "1", same_time, sequence=3),
        ]

        plan = plan_fifo(sku="A", quantity=Decimal("5"), layers=layers)

        assert plan.draws[0].layer_id == low
        assert plan.total_cost == Decimal("5.00")

    def test_partially_consumed_layer_draws_remaining_only(self):
        layer, later = uuid4(), uuid4()
        layers = [
            layer_state(layer, "3", "5", utc(2024, 1, 1), qty_received="10"),
            layer_state(later, "10", "7", utc(2024, 1, 2), sequence=2),
        ]

        plan = plan_fifo(sku="A", quantity=Decimal("4"), layers=layers)

        assert [d.quantity for d in plan.draws] == [Decimal("3"), Decimal("1")]
        assert plan.total_cost == Decimal("22.00")

    def test_fractional_quantities_round_amount_to_cents(self):
        plan = plan_fifo(
            sku="A",
            quantity=Decimal("0.333"),
            layers=[layer_state(uuid4(), "1", "10", utc(2024, 1, 1))],
        )

        assert plan.draws[0].amount == Decimal("3.33")

    def test_weighted_unit_cost(self):
        layers = [
            layer_state(uuid4(), "10", "5", utc(2024, 1, 1), sequence=1),
            layer_state(uuid4(), "10", "7", utc(2024, 1, 2), sequence=2),
        ]

        plan = plan_fifo(sku="A", quantity=Decimal("20"), layers=layers)

        assert plan.weighted_unit_cost == Decimal("6")


class TestEligibility:
    """Which layers may be drawn from."""

    def test_voided_layers_are_skipped(self):
        voided, live = uuid4(), uuid4()
        layers = [
            layer_state(voided, "10", "1", utc(2024, 1, 1), sequence=1, is_voided=True),
            layer_state(live, "10", "3", utc(2024, 1, 2), sequence=2),
        ]

        plan = plan_fifo(sku="A", quantity=Decimal("2"), layers=layers)

        assert [d.layer_id for d in plan.draws] == [live]

    def test_empty_layers_are_skipped(self):
        layers = [
            layer_state(uuid4(), "0", "1", utc(2024, 1, 1), qty_received="5"),
            layer_state(uuid4(), "5", "2", utc(2024, 1, 2), sequence=2),
        ]

        assert len(eligible_layers(layers)) == 1

    def test_voided_layer_is_not_integrity_checked(self):
        """A voided row is out of scope even if its quantities are odd."""
        layers = [
            layer_state(uuid4(), "20", "1", utc(2024, 1, 1), qty_received="10", is_voided=True),
        ]

        assert eligible_layers(layers) == []


class TestInsufficientStock:
    """All-or-nothing failure."""

    def test_shortfall_reported(self):
        layers = [layer_state(uuid4(), "10", "5", utc(2024, 1, 1))]

        with pytest.raises(InsufficientStockError) as exc_info:
            plan_fifo(sku="A", quantity=Decimal("12"), layers=layers)

        assert exc_info.value.sku == "A"
        assert exc_info.value.requested == Decimal("12")
        assert exc_info.value.available == Decimal("10")
        assert exc_info.value.shortfall == Decimal("2")

    def test_no_layers(self):
        with pytest.raises(InsufficientStockError):
            plan_fifo(sku="A", quantity=Decimal("1"), layers=[])

    def test_voided_stock_does_not_count(self):
        layers = [layer_state(uuid4(), "10", "5", utc(2024, 1, 1), is_voided=True)]

        with pytest.raises(InsufficientStockError) as exc_info:
            plan_fifo(sku="A", quantity=Decimal("1"), layers=layers)

        assert exc_info.value.available == Decimal("0")

    @pytest.mark.parametrize("quantity", ["0", "-1"])
    def test_non_positive_quantity_rejected(self, quantity):
        with pytest.raises(ValueError):
            plan_fifo(sku="A", quantity=Decimal(quantity), layers=[])


class TestIntegrity:
    """Corrupt layers abort the plan."""

    def test_remaining_above_received(self):
        bad = uuid4()
        layers = [layer_state(bad, "11", "5", utc(2024, 1, 1), qty_received="10")]

        with pytest.raises(DataIntegrityError) as exc_info:
            plan_fifo(sku="A", quantity=Decimal("1"), layers=layers)

        assert exc_info.value.sku == "A"
        assert exc_info.value.layer_id == str(bad)

    def test_negative_remaining(self):
        layers = [layer_state(uuid4(), "-1", "5", utc(2024, 1, 1), qty_received="10")]

        with pytest.raises(DataIntegrityError):
            plan_fifo(sku="A", quantity=Decimal("1"), layers=layers)


class TestRevaluation:
    """Moving-average valuation keeps the quantities."""

    def test_valued_at_replaces_unit_cost(self):
        layers = [
            layer_state(uuid4(), "10", "5", utc(2024, 1, 1), sequence=1),
            layer_state(uuid4(), "10", "7", utc(2024, 1, 2), sequence=2),
        ]
        plan = plan_fifo(sku="A", quantity=Decimal("15"), layers=layers)

        avg = plan.valued_at(Decimal("6"))

        assert [d.quantity for d in avg.draws] == [d.quantity for d in plan.draws]
        assert [d.remaining_after for d in avg.draws] == [d.remaining_after for d in plan.draws]
        assert avg.total_cost == Decimal("90.00")
        assert all(d.unit_cost == Decimal("6") for d in avg.draws)


class TestTrace:
    """Every plan emits an engine trace."""

    def test_trace_logged(self, captured_logs):
        plan_fifo(
            sku="A",
            quantity=Decimal("1"),
            layers=[layer_state(uuid4(), "1", "1", utc(2024, 1, 1))],
        )

        traces = [r for r in captured_logs() if r["message"] == "COSTING_ENGINE_TRACE"]
        assert traces
        assert traces[-1]["engine_name"] == "fifo"
        assert len(traces[-1]["input_fingerprint"]) == 16
