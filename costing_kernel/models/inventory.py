"""
Inventory ledger models.

Responsibility:
    Catalog items, bundle recipes, receipt layers (the FIFO ledger) and the
    per-day moving-average cost snapshots.

Architecture position:
    Kernel > Models.  Imports only from db/base.py and domain/values.py.

Invariants enforced:
    - 0 <= qty_remaining <= qty_received on every receipt layer (check
      constraints).  Layers are voided, never deleted.
    - Bundle component quantity > 0 and a bundle never contains itself.
    - One cost snapshot per (sku, as_of_date).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.domain.values import RefType


class InventoryItem(TrackedBase):
    """
    A stock-keeping unit.

    Contract:
        ``sku_internal`` is the immutable identity; ``product_name`` and
        ``base_cost`` are display attributes.  ``is_bundle`` items are
        virtual and never carry receipt layers.
    """

    __tablename__ = "inventory_items"

    __table_args__ = (
        UniqueConstraint("sku_internal", name="uq_inventory_items_sku"),
        CheckConstraint("base_cost >= 0", name="ck_inventory_items_base_cost"),
    )

    sku_internal: Mapped[str] = mapped_column(String(100), nullable=False)

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    base_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    is_bundle: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        kind = "bundle" if self.is_bundle else "item"
        return f"<InventoryItem {self.sku_internal} ({kind})>"


class BundleComponent(TrackedBase):
    """One line of a bundle recipe: ``quantity`` of ``component_sku`` per bundle unit."""

    __tablename__ = "inventory_bundle_components"

    __table_args__ = (
        UniqueConstraint(
            "bundle_sku", "component_sku", name="uq_bundle_components_pair"
        ),
        CheckConstraint("quantity > 0", name="ck_bundle_components_quantity"),
        CheckConstraint(
            "bundle_sku <> component_sku", name="ck_bundle_components_no_self"
        ),
        Index("idx_bundle_components_bundle", "bundle_sku"),
    )

    bundle_sku: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("inventory_items.sku_internal", ondelete="CASCADE"),
        nullable=False,
    )

    component_sku: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("inventory_items.sku_internal", ondelete="CASCADE"),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<BundleComponent {self.bundle_sku} -> {self.quantity} x {self.component_sku}>"


class ReceiptLayer(TrackedBase):
    """
    One discrete receipt of physical stock.

    Contract:
        ``qty_remaining`` is decremented only by the FIFO allocator and
        incremented only by a return reversal.  ``sequence`` is a monotonic
        creation counter that breaks ``received_at`` ties.

    Guarantees:
        - 0 <= qty_remaining <= qty_received (ck_receipt_layers_*).
        - unit_cost >= 0.
        - A voided layer keeps its row; it is excluded from allocation and
          on-hand queries.
    """

    __tablename__ = "inventory_receipt_layers"

    __table_args__ = (
        CheckConstraint("qty_received > 0", name="ck_receipt_layers_received"),
        CheckConstraint("qty_remaining >= 0", name="ck_receipt_layers_remaining"),
        CheckConstraint(
            "qty_remaining <= qty_received", name="ck_receipt_layers_remaining_lte"
        ),
        CheckConstraint("unit_cost >= 0", name="ck_receipt_layers_unit_cost"),
        Index("idx_receipt_layers_fifo", "sku", "is_voided", "received_at", "sequence"),
    )

    sku: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("inventory_items.sku_internal", ondelete="CASCADE"),
        nullable=False,
    )

    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    qty_received: Mapped[Decimal] = mapped_column(nullable=False)

    qty_remaining: Mapped[Decimal] = mapped_column(nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)

    ref_type: Mapped[RefType] = mapped_column(String(30), nullable=False)

    # Source document (stock-in form, return reference, original layer)
    ref_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    is_voided: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    voided_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReceiptLayer {self.sku} #{self.sequence} "
            f"{self.qty_remaining}/{self.qty_received} @ {self.unit_cost}>"
        )

    @property
    def is_untouched(self) -> bool:
        """True when nothing has been drawn from the layer."""
        return self.qty_remaining == self.qty_received


class CostSnapshot(TrackedBase):
    """End-of-business-day moving-average position for one SKU."""

    __tablename__ = "inventory_cost_snapshots"

    __table_args__ = (
        UniqueConstraint("sku", "as_of_date", name="uq_cost_snapshots_sku_date"),
        CheckConstraint("avg_unit_cost >= 0", name="ck_cost_snapshots_avg"),
    )

    sku: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("inventory_items.sku_internal", ondelete="CASCADE"),
        nullable=False,
    )

    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)

    on_hand_qty: Mapped[Decimal] = mapped_column(nullable=False)

    on_hand_value: Mapped[Decimal] = mapped_column(nullable=False)

    avg_unit_cost: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<CostSnapshot {self.sku} {self.as_of_date} avg={self.avg_unit_cost}>"
