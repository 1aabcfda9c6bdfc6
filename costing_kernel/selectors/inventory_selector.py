"""
Module: costing_kernel.selectors.inventory_selector
Responsibility: Read-only views of the receipt-layer ledger: on-hand per SKU
    and per-layer detail for display and reconciliation.

Invariants enforced:
    - Voided layers never contribute to on-hand.
    - Every regular (non-bundle) item appears in on_hand_by_sku, with zero
      when it has no stock.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from costing_kernel.models.inventory import InventoryItem, ReceiptLayer
from costing_kernel.selectors.base import BaseSelector

ZERO = Decimal("0")


@dataclass(frozen=True)
class LayerView:
    layer_id: UUID
    sku: str
    received_at: datetime
    sequence: int
    qty_received: Decimal
    qty_remaining: Decimal
    unit_cost: Decimal
    ref_type: str
    is_voided: bool


class InventorySelector(BaseSelector):
    """Queries over inventory items and receipt layers."""

    def on_hand_by_sku(self) -> dict[str, Decimal]:
        """Sum of qty_remaining over non-voided layers for every regular item."""
        items = self.session.execute(
            select(InventoryItem.sku_internal).where(InventoryItem.is_bundle.is_(False))
        ).scalars()
        on_hand = {sku: ZERO for sku in items}

        rows = self.session.execute(
            select(ReceiptLayer.sku, func.sum(ReceiptLayer.qty_remaining))
            .where(ReceiptLayer.is_voided.is_(False))
            .group_by(ReceiptLayer.sku)
        )
        for sku, total in rows:
            on_hand[sku] = Decimal(total or 0)
        return on_hand

    def on_hand(self, sku: str) -> Decimal:
        total = self.session.execute(
            select(func.sum(ReceiptLayer.qty_remaining)).where(
                ReceiptLayer.sku == sku,
                ReceiptLayer.is_voided.is_(False),
            )
        ).scalar()
        return Decimal(total or 0)

    def layers(self, sku: str, include_voided: bool = False) -> list[LayerView]:
        """Layers for ``sku`` in FIFO order."""
        stmt = select(ReceiptLayer).where(ReceiptLayer.sku == sku)
        if not include_voided:
            stmt = stmt.where(ReceiptLayer.is_voided.is_(False))
        stmt = stmt.order_by(ReceiptLayer.received_at, ReceiptLayer.sequence)
        return [
            LayerView(
                layer_id=layer.id,
                sku=layer.sku,
                received_at=layer.received_at,
                sequence=layer.sequence,
                qty_received=layer.qty_received,
                qty_remaining=layer.qty_remaining,
                unit_cost=layer.unit_cost,
                ref_type=str(layer.ref_type),
                is_voided=layer.is_voided,
            )
            for layer in self.session.execute(stmt).scalars()
        ]
