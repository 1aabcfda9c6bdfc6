"""
Module: costing_engines.moving_average
Responsibility:
    Replay signed quantity/value movements for one SKU into end-of-day
    moving-average snapshots.

Architecture position:
    Engines -- pure, zero I/O.  AverageCostService gathers movements from
    receipt layers and allocation rows and persists the snapshots.

Invariants enforced:
    - on_hand_value is the exact signed sum of movement values; it is
      never adjusted to fit the average.
    - avg_unit_cost is recomputed as value / qty while qty > 0 and the
      value is non-negative.  Otherwise the previous average carries over,
      which covers a day that issues stock received on a later date.
    - Movements are applied in (occurred_on, sequence) order.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from costing_engines.tracer import traced_engine
from costing_kernel.domain.values import round_money

ZERO = Decimal("0")


@dataclass(frozen=True)
class CostMovement:
    """A receipt (+qty, +value) or an issue/return (signed) on one business day."""

    occurred_on: date
    sequence: int
    qty: Decimal
    value: Decimal


@dataclass(frozen=True)
class SnapshotState:
    as_of_date: date
    on_hand_qty: Decimal
    on_hand_value: Decimal
    avg_unit_cost: Decimal


def apply_movement(state: SnapshotState | None, movement: CostMovement) -> SnapshotState:
    """Position after ``movement`` starting from ``state`` (None = empty)."""
    qty = (state.on_hand_qty if state else ZERO) + movement.qty
    value = (state.on_hand_value if state else ZERO) + movement.value
    previous_avg = state.avg_unit_cost if state else ZERO

    if qty > ZERO and value >= ZERO:
        avg = round_money(value / qty)
    else:
        avg = previous_avg
    if qty == ZERO:
        value = ZERO

    return SnapshotState(
        as_of_date=movement.occurred_on,
        on_hand_qty=qty,
        on_hand_value=value,
        avg_unit_cost=avg,
    )


@traced_engine("moving_average", "1.0", fingerprint_fields=("opening",))
def build_snapshots(
    *,
    movements: Iterable[CostMovement],
    opening: SnapshotState | None = None,
) -> list[SnapshotState]:
    """
    One snapshot per business day that has at least one movement.

    Postconditions:
        - Snapshots are in ascending date order.
        - Each snapshot reflects every movement on or before its date,
          starting from ``opening``.
    """
    ordered = sorted(movements, key=lambda m: (m.occurred_on, m.sequence))
    snapshots: dict[date, SnapshotState] = {}
    state = opening
    for movement in ordered:
        state = apply_movement(state, movement)
        snapshots[movement.occurred_on] = state
    return [snapshots[d] for d in sorted(snapshots)]
