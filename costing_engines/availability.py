"""
Module: costing_engines.availability
Responsibility:
    Combine on-hand stock and open (unshipped, uncancelled) demand into
    on_hand / reserved / available maps, and derive how many complete
    bundle sets the available components can build.

Architecture position:
    Engines -- pure, zero I/O.

Invariants enforced:
    - Bundle SKUs never accumulate reserved quantity; their demand is
      exploded onto components.
    - available = on_hand - reserved and may be negative (oversold).
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from costing_engines.bundle import BundleSku, ResolvedSku, explode
from costing_engines.tracer import traced_engine
from costing_kernel.exceptions import ConfigurationError

ZERO = Decimal("0")


@dataclass(frozen=True)
class Availability:
    on_hand: dict[str, Decimal]
    reserved: dict[str, Decimal]
    available: dict[str, Decimal]


@dataclass(frozen=True)
class BundleSets:
    """Complete bundle units buildable, and the component that limits them."""

    bundle_sku: str
    sets: int
    limiting_sku: str


@traced_engine("availability", "1.0")
def compute_availability(
    *,
    on_hand: Mapping[str, Decimal],
    open_demand: Iterable[tuple[ResolvedSku, Decimal]],
) -> Availability:
    """
    Args:
        on_hand: Regular SKU -> sum of qty_remaining over non-voided layers.
        open_demand: (resolved order SKU, ordered quantity) per open line.
    """
    reserved: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for resolved, quantity in open_demand:
        for component_sku, required in explode(resolved, quantity):
            reserved[component_sku] += required

    skus = set(on_hand) | set(reserved)
    available = {
        sku: on_hand.get(sku, ZERO) - reserved.get(sku, ZERO) for sku in skus
    }
    return Availability(
        on_hand=dict(on_hand),
        reserved=dict(reserved),
        available=available,
    )


def bundle_sets_available(
    bundle: BundleSku,
    available: Mapping[str, Decimal],
) -> BundleSets:
    """
    min over components of floor(available / quantity_per_unit).

    Oversold components give a negative result; it is reported as-is.

    Raises:
        ConfigurationError: the bundle has no components.
    """
    best: tuple[int, str] | None = None
    for component in bundle.components:
        stock = available.get(component.sku, ZERO)
        sets = int((stock / component.quantity_per_unit).to_integral_value(rounding=ROUND_FLOOR))
        if best is None or sets < best[0]:
            best = (sets, component.sku)
    if best is None:
        raise ConfigurationError(bundle.sku)
    return BundleSets(bundle_sku=bundle.sku, sets=best[0], limiting_sku=best[1])
