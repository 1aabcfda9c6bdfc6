"""
Property-based tests for the FIFO and availability engines.

Hypothesis generates layer sets and demands; the properties are the ones
the allocator must hold for any input:
- draws sum exactly to the requested quantity
- no layer is drawn beyond what it has left
- every draw except the last empties its layer (oldest first)
- a request above available stock raises and never returns a partial plan
- available == on_hand - reserved for every SKU
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from costing_engines.availability import compute_availability
from costing_engines.bundle import BundleSku, Component, RegularSku
from costing_engines.fifo import eligible_layers, plan_fifo
from costing_kernel.exceptions import InsufficientStockError
from tests.factories import layer_state, utc

quantities = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("100"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
unit_costs = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("50"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)


@composite
def layer_sets(draw):
    """1-8 layers on days 1-10 of January, some sharing a receipt time."""
    count = draw(st.integers(min_value=1, max_value=8))
    layers = []
    for sequence in range(1, count + 1):
        day = draw(st.integers(min_value=0, max_value=9))
        layers.append(
            layer_state(
                uuid4(),
                str(draw(quantities)),
                str(draw(unit_costs)),
                utc(2024, 1, 1) + timedelta(days=day),
                sequence=sequence,
            )
        )
    return layers


@composite
def layers_and_demand(draw):
    layers = draw(layer_sets())
    total = sum(layer.qty_remaining for layer in layers)
    demand = draw(
        st.decimals(min_value=Decimal("0.01"), max_value=total, places=2)
    )
    return layers, demand


class TestFifoProperties:

    @given(layers_and_demand())
    @settings(max_examples=100, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_draws_sum_to_request(self, case):
        layers, demand = case

        plan = plan_fifo(sku="A", quantity=demand, layers=layers)

        assert sum(d.quantity for d in plan.draws) == demand
        assert all(d.quantity > 0 for d in plan.draws)

    @given(layers_and_demand())
    @settings(max_examples=100, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_oldest_layers_emptied_first(self, case):
        layers, demand = case
        by_id = {layer.layer_id: layer for layer in layers}

        plan = plan_fifo(sku="A", quantity=demand, layers=layers)

        expected_order = [layer.layer_id for layer in eligible_layers(layers)]
        assert [d.layer_id for d in plan.draws] == expected_order[: len(plan.draws)]
        for draw in plan.draws:
            assert draw.quantity <= by_id[draw.layer_id].qty_remaining
        for draw in plan.draws[:-1]:
            assert draw.remaining_after == 0

    @given(layer_sets(), quantities)
    @settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_over_request_raises(self, layers, extra):
        total = sum(layer.qty_remaining for layer in layers)

        with pytest.raises(InsufficientStockError) as exc_info:
            plan_fifo(sku="A", quantity=total + extra, layers=layers)

        assert exc_info.value.shortfall == extra


class TestAvailabilityProperties:

    @given(
        st.dictionaries(st.sampled_from(["X", "Y", "Z"]), quantities, min_size=1),
        st.lists(
            st.tuples(st.sampled_from(["X", "Y", "B"]), st.integers(min_value=1, max_value=20)),
            max_size=10,
        ),
    )
    @settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_available_is_on_hand_minus_reserved(self, on_hand, lines):
        bundle = BundleSku(
            "B",
            (Component("X", Decimal("2")), Component("Z", Decimal("0.5"))),
        )
        demand = [
            (bundle if sku == "B" else RegularSku(sku), Decimal(qty)) for sku, qty in lines
        ]

        result = compute_availability(on_hand=on_hand, open_demand=demand)

        assert "B" not in result.reserved
        for sku, available in result.available.items():
            assert available == on_hand.get(sku, 0) - result.reserved.get(sku, 0)
