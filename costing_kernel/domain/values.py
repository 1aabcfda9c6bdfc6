"""
Value objects and normalisation helpers for costing.

Responsibility:
    Immutable inputs shared by engines and services (``OrderLine``), the
    costing vocabulary enums, and the time and decimal normalisation that
    every layer must apply identically.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Every datetime crossing into storage is UTC-aware (``as_utc``).
      Naive values are taken to be UTC; SQLite hands them back naive.
    - Business dates are derived in one place (``business_date``) so the
      daily COGS report and the cost snapshots bucket identically.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from zoneinfo import ZoneInfo

MONEY_PLACES = Decimal("0.01")


class CostMethod(str, Enum):
    """How a draw from a receipt layer is valued."""

    FIFO = "FIFO"
    AVG = "AVG"


class RefType(str, Enum):
    """Origin of a receipt layer."""

    OPENING_BALANCE = "OPENING_BALANCE"
    PURCHASE = "PURCHASE"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"


class SkipReason(str, Enum):
    """Why an order line was not allocated. Skips are not failures."""

    ALREADY_ALLOCATED = "already_allocated"
    MISSING_SKU = "missing_sku"
    INVALID_QTY = "invalid_qty"
    CANCELLED = "cancelled"
    NOT_SHIPPED = "not_shipped"


class ReturnType(str, Enum):
    """What a customer return does to stock and COGS."""

    # Goods came back: stock restored and COGS reversed
    RETURN_RECEIVED = "RETURN_RECEIVED"
    # Money refunded, goods kept by the customer: no stock or COGS change
    REFUND_ONLY = "REFUND_ONLY"
    # Order withdrawn after allocation but before dispatch: allocation reversed
    CANCEL_BEFORE_SHIP = "CANCEL_BEFORE_SHIP"

    @property
    def restocks(self) -> bool:
        return self is not ReturnType.REFUND_ONLY


@dataclass(frozen=True)
class OrderLine:
    """
    One sales order line as seen by the costing engine.

    Contract:
        Read-only projection of the sales subsystem's row.  ``status`` is the
        marketplace status string; ``cancelled`` is the explicit flag.  Either
        one marks the line cancelled (see costing_engines.order_status).
    """

    order_id: str
    sku: str | None
    quantity: Decimal | None
    created_at: datetime | None = None
    shipped_at: datetime | None = None
    cancelled: bool = False
    status: str | None = None


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive means UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def business_date(value: datetime, tz_name: str) -> date:
    """Calendar date of ``value`` in the business timezone."""
    return as_utc(value).astimezone(ZoneInfo(tz_name)).date()


def business_day_bounds(day: date, tz_name: str) -> tuple[datetime, datetime]:
    """UTC [start, end) of a business day."""
    tz = ZoneInfo(tz_name)
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    end = datetime.fromordinal(day.toordinal() + 1).replace(tzinfo=tz)
    return as_utc(start), as_utc(end)


def round_money(value: Decimal) -> Decimal:
    """Round a currency amount half-up to two places."""
    return Decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
