"""
Order-line eligibility shared by COGS allocation and reservations.

Both the allocation engine and the reservation calculator decide which
order lines "count" through this module, so a line can never be reserved
and ineligible for COGS at the same time for the same reason.
"""

from __future__ import annotations

from collections.abc import Collection
from decimal import Decimal

from costing_kernel.domain.values import OrderLine, SkipReason

DEFAULT_CANCELLED_STATUSES: frozenset[str] = frozenset({"cancelled", "canceled"})


def is_cancelled(
    line: OrderLine,
    cancelled_statuses: Collection[str] = DEFAULT_CANCELLED_STATUSES,
) -> bool:
    """True when the line is flagged cancelled or carries a cancelled status."""
    if line.cancelled:
        return True
    if line.status is None:
        return False
    return line.status.strip().lower() in cancelled_statuses


def has_valid_quantity(line: OrderLine) -> bool:
    if line.quantity is None:
        return False
    try:
        return Decimal(line.quantity) > 0
    except (ArithmeticError, TypeError, ValueError):
        return False


def cogs_skip_reason(
    line: OrderLine,
    cancelled_statuses: Collection[str] = DEFAULT_CANCELLED_STATUSES,
) -> SkipReason | None:
    """
    Reason the line must not be allocated, or None if it is eligible.

    ``already_allocated`` is decided later against stored claims.
    """
    if is_cancelled(line, cancelled_statuses):
        return SkipReason.CANCELLED
    if line.shipped_at is None:
        return SkipReason.NOT_SHIPPED
    if not line.sku or not line.sku.strip():
        return SkipReason.MISSING_SKU
    if not has_valid_quantity(line):
        return SkipReason.INVALID_QTY
    return None


def is_open_demand(
    line: OrderLine,
    cancelled_statuses: Collection[str] = DEFAULT_CANCELLED_STATUSES,
) -> bool:
    """True when the line reserves stock: unshipped, not cancelled, valid sku and qty."""
    if is_cancelled(line, cancelled_statuses) or line.shipped_at is not None:
        return False
    return bool(line.sku and line.sku.strip()) and has_valid_quantity(line)
