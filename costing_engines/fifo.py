"""
Module: costing_engines.fifo
Responsibility:
    Plan the consumption of receipt layers for one SKU, oldest first.  The
    plan is computed without touching any layer; the allocator service
    applies it in one flush, so a failed plan leaves the ledger unchanged.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Ordering: eligible layers are consumed by (received_at, sequence)
      ascending, so the same ledger always yields the same draws.
    - Eligibility: voided layers and layers with nothing remaining are
      never drawn from.
    - All-or-nothing: if eligible stock is short the planner raises before
      producing any draw.
    - Integrity: a layer outside 0 <= qty_remaining <= qty_received aborts
      the plan with DataIntegrityError; it is never clamped.

Failure modes:
    - InsufficientStockError(sku, requested, available).
    - DataIntegrityError naming the sku and layer.
    - ValueError for a non-positive requested quantity.

Usage:
    plan = plan_fifo(sku="A", quantity=Decimal("15"), layers=layers)
    for draw in plan.draws:
        ...
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from costing_engines.tracer import traced_engine
from costing_kernel.domain.values import as_utc, round_money
from costing_kernel.exceptions import DataIntegrityError, InsufficientStockError
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.fifo")

ZERO = Decimal("0")


@dataclass(frozen=True)
class LayerState:
    """Snapshot of one receipt layer as loaded for planning."""

    layer_id: UUID
    sku: str
    received_at: datetime
    sequence: int
    qty_received: Decimal
    qty_remaining: Decimal
    unit_cost: Decimal
    is_voided: bool = False

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (as_utc(self.received_at), self.sequence)


@dataclass(frozen=True)
class LayerDraw:
    """Quantity taken from a single layer and what it is valued at."""

    layer_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    amount: Decimal
    remaining_after: Decimal


@dataclass(frozen=True)
class FifoPlan:
    """
    The full set of draws satisfying one requested quantity.

    Guarantees:
        - sum(d.quantity for d in draws) == quantity.
        - draws are in consumption order.
    """

    sku: str
    quantity: Decimal
    draws: tuple[LayerDraw, ...]

    @property
    def total_cost(self) -> Decimal:
        return sum((d.amount for d in self.draws), ZERO)

    @property
    def weighted_unit_cost(self) -> Decimal:
        if self.quantity == ZERO:
            return ZERO
        return self.total_cost / self.quantity

    def valued_at(self, unit_cost: Decimal) -> FifoPlan:
        """Same draws, each re-valued at ``unit_cost`` (moving-average method)."""
        draws = tuple(
            replace(d, unit_cost=unit_cost, amount=round_money(d.quantity * unit_cost))
            for d in self.draws
        )
        return replace(self, draws=draws)


def check_layer_integrity(layer: LayerState) -> None:
    """Raise DataIntegrityError if the layer violates its quantity bounds."""
    if layer.qty_received <= ZERO or layer.qty_remaining < ZERO:
        raise DataIntegrityError(
            f"Receipt layer {layer.layer_id} has a non-positive receipt or "
            f"negative remaining quantity",
            sku=layer.sku,
            layer_id=str(layer.layer_id),
        )
    if layer.qty_remaining > layer.qty_received:
        raise DataIntegrityError(
            f"Receipt layer {layer.layer_id} has qty_remaining "
            f"{layer.qty_remaining} > qty_received {layer.qty_received}",
            sku=layer.sku,
            layer_id=str(layer.layer_id),
        )
    if layer.unit_cost < ZERO:
        raise DataIntegrityError(
            f"Receipt layer {layer.layer_id} has negative unit cost",
            sku=layer.sku,
            layer_id=str(layer.layer_id),
        )


def eligible_layers(layers: Iterable[LayerState]) -> list[LayerState]:
    """Non-voided layers with stock left, in consumption order."""
    candidates = []
    for layer in layers:
        if layer.is_voided:
            continue
        check_layer_integrity(layer)
        if layer.qty_remaining > ZERO:
            candidates.append(layer)
    return sorted(candidates, key=lambda layer: layer.sort_key)


@traced_engine("fifo", "1.0", fingerprint_fields=("sku", "quantity"))
def plan_fifo(
    *,
    sku: str,
    quantity: Decimal,
    layers: Iterable[LayerState],
) -> FifoPlan:
    """
    Plan an oldest-first draw of ``quantity`` units of ``sku``.

    Preconditions:
        - quantity > 0.
        - layers all belong to ``sku``.

    Postconditions:
        - Returns a FifoPlan whose draws sum exactly to ``quantity``.

    Raises:
        InsufficientStockError: eligible stock < quantity.
        DataIntegrityError: a layer violates its quantity bounds.
        ValueError: quantity <= 0.
    """
    if quantity <= ZERO:
        raise ValueError(f"quantity must be positive, got {quantity}")

    ordered = eligible_layers(layers)
    available = sum((layer.qty_remaining for layer in ordered), ZERO)
    if available < quantity:
        logger.info(
            "fifo_insufficient_stock",
            extra={"sku": sku, "requested": quantity, "available": available},
        )
        raise InsufficientStockError(sku, quantity, available)

    draws: list[LayerDraw] = []
    outstanding = quantity
    for layer in ordered:
        take = min(layer.qty_remaining, outstanding)
        draws.append(
            LayerDraw(
                layer_id=layer.layer_id,
                quantity=take,
                unit_cost=layer.unit_cost,
                amount=round_money(take * layer.unit_cost),
                remaining_after=layer.qty_remaining - take,
            )
        )
        outstanding -= take
        if outstanding == ZERO:
            break

    return FifoPlan(sku=sku, quantity=quantity, draws=tuple(draws))
