"""
Customer return log.

Every return applied to an order line, restocking or not, leaves one RETURN
row here.  Undoing it adds an UNDO row pointing back at the return through
``reversed_return_id``; neither row is ever updated or deleted.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.domain.values import ReturnType


class ReturnAction(str, Enum):
    RETURN = "RETURN"
    UNDO = "UNDO"


class InventoryReturn(TrackedBase):
    """One return (or the undo of one) against an order line."""

    __tablename__ = "inventory_returns"

    __table_args__ = (
        UniqueConstraint(
            "order_id",
            "line_sku",
            "reference",
            "action_type",
            name="uq_inventory_returns_reference_action",
        ),
        CheckConstraint("quantity > 0", name="ck_inventory_returns_quantity"),
        CheckConstraint(
            "return_type IN ('RETURN_RECEIVED', 'REFUND_ONLY', 'CANCEL_BEFORE_SHIP')",
            name="ck_inventory_returns_type",
        ),
        CheckConstraint(
            "(action_type = 'RETURN' AND reversed_return_id IS NULL)"
            " OR (action_type = 'UNDO' AND reversed_return_id IS NOT NULL)",
            name="ck_inventory_returns_undo_link",
        ),
        Index("idx_inventory_returns_order", "order_id", "line_sku"),
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    line_sku: Mapped[str] = mapped_column(String(100), nullable=False)

    reference: Mapped[str] = mapped_column(String(100), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    return_type: Mapped[ReturnType] = mapped_column(String(30), nullable=False)

    action_type: Mapped[ReturnAction] = mapped_column(
        String(10), default=ReturnAction.RETURN, nullable=False
    )

    reversed_return_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_returns.id"),
        nullable=True,
    )

    returned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<InventoryReturn {self.action_type} {self.order_id}/{self.line_sku} {self.reference}>"
