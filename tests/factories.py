"""Plain builders shared by test modules (fixtures live in conftest.py)."""

from datetime import datetime, timezone
from decimal import Decimal

from costing_engines.fifo import LayerState
from costing_kernel.domain.values import OrderLine


def utc(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def shipped_line(
    order_id: str,
    sku: str,
    quantity: str,
    shipped_at: datetime | None = None,
) -> OrderLine:
    """A shipped, non-cancelled order line."""
    return OrderLine(
        order_id=order_id,
        sku=sku,
        quantity=Decimal(quantity),
        shipped_at=shipped_at or utc(2024, 1, 10),
    )


def layer_state(
    layer_id,
    qty_remaining: str,
    unit_cost: str,
    received_at: datetime,
    sequence: int = 1,
    qty_received: str | None = None,
    sku: str = "A",
    is_voided: bool = False,
) -> LayerState:
    return LayerState(
        layer_id=layer_id,
        sku=sku,
        received_at=received_at,
        sequence=sequence,
        qty_received=Decimal(qty_received or qty_remaining),
        qty_remaining=Decimal(qty_remaining),
        unit_cost=Decimal(unit_cost),
        is_voided=is_voided,
    )
