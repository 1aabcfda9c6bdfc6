"""
Sales order lines.

Owned by the sales-import subsystem; the costing engine only reads them
(COGS eligibility, reservations) and never writes back.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase
from costing_kernel.domain.values import OrderLine, as_utc


class SalesOrder(TrackedBase):
    """One marketplace order line."""

    __tablename__ = "sales_orders"

    __table_args__ = (
        Index("idx_sales_orders_order", "order_id"),
        Index("idx_sales_orders_shipped", "shipped_at"),
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    sku: Mapped[str | None] = mapped_column(String(100), nullable=True)

    quantity: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Marketplace status text, e.g. "Shipped", "Cancelled"
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)

    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    order_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_order_line(self) -> OrderLine:
        """Project this row onto the engine's read-only input."""
        return OrderLine(
            order_id=self.order_id,
            sku=self.sku,
            quantity=self.quantity,
            created_at=as_utc(self.order_created_at) if self.order_created_at else None,
            shipped_at=as_utc(self.shipped_at) if self.shipped_at else None,
            cancelled=self.is_cancelled,
            status=self.status,
        )
