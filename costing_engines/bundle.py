"""
Module: costing_engines.bundle
Responsibility:
    Turn a SKU into a tagged variant, ``RegularSku`` or ``BundleSku``, once,
    and explode an ordered quantity into per-component requirements.  Callers
    never branch on an ``is_bundle`` flag after resolution.

Architecture position:
    Engines -- pure, zero I/O.  The bundle resolver service loads catalog
    rows and calls ``resolve_sku``.

Invariants enforced:
    - A regular SKU explodes to itself with quantity 1 per unit.
    - A bundle with zero components is a ConfigurationError.
    - Components are ordered by SKU so explosion order is deterministic.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from costing_kernel.exceptions import ConfigurationError

ONE = Decimal("1")


@dataclass(frozen=True)
class Component:
    """``quantity_per_unit`` of ``sku`` in one unit of the parent SKU."""

    sku: str
    quantity_per_unit: Decimal


@dataclass(frozen=True)
class RegularSku:
    """A physically stocked SKU."""

    sku: str

    @property
    def components(self) -> tuple[Component, ...]:
        return (Component(self.sku, ONE),)

    @property
    def is_bundle(self) -> bool:
        return False


@dataclass(frozen=True)
class BundleSku:
    """A virtual SKU made of weighted components."""

    sku: str
    components: tuple[Component, ...]

    @property
    def is_bundle(self) -> bool:
        return True


ResolvedSku = RegularSku | BundleSku


def resolve_sku(
    sku: str,
    is_bundle: bool,
    recipe: Iterable[tuple[str, Decimal]] = (),
) -> ResolvedSku:
    """
    Build the tagged variant for ``sku``.

    Raises:
        ConfigurationError: ``is_bundle`` and the recipe is empty.
    """
    if not is_bundle:
        return RegularSku(sku)
    components = tuple(
        sorted(
            (Component(component_sku, Decimal(qty)) for component_sku, qty in recipe),
            key=lambda c: c.sku,
        )
    )
    if not components:
        raise ConfigurationError(sku)
    return BundleSku(sku, components)


def explode(resolved: ResolvedSku, quantity: Decimal) -> list[tuple[str, Decimal]]:
    """Required quantity per component for ``quantity`` units of ``resolved``."""
    return [(c.sku, c.quantity_per_unit * quantity) for c in resolved.components]
