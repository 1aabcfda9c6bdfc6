"""
ReservationCalculator -- on-hand, reserved and available stock.

Responsibility:
    Read-only, recomputed-on-demand availability for display and decision
    support.  On-hand comes from live receipt layers; reserved comes from
    unshipped, uncancelled order lines exploded through the bundle resolver.

Architecture position:
    Services (read side) -- never flushes, takes no locks.  Results may
    lag concurrent writers; that is acceptable for display.

Invariants enforced:
    - Uses ``costing_engines.order_status.is_open_demand``, the same
      cancelled/shipped predicate COGS eligibility uses.
    - available = on_hand - reserved, negative when oversold.

Failure modes:
    - A bundle with no components cannot be exploded; its demand is
      left out and the SKU is listed in ``unconfigured_bundles``.
    - Demand for a SKU missing from the catalog is left out the same way
      and listed in ``unknown_skus``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingSettings
from costing_engines.availability import (
    Availability,
    BundleSets,
    bundle_sets_available,
    compute_availability,
)
from costing_engines.bundle import BundleSku
from costing_engines.order_status import is_open_demand
from costing_kernel.exceptions import ConfigurationError, InvalidBundleRecipeError, ItemNotFoundError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.sales import SalesOrder
from costing_kernel.selectors.inventory_selector import InventorySelector
from costing_services.bundle_resolver import BundleResolver

logger = get_logger("services.reservation")


@dataclass(frozen=True)
class AvailabilityReport:
    availability: Availability
    unconfigured_bundles: frozenset[str] = frozenset()
    unknown_skus: frozenset[str] = frozenset()

    @property
    def on_hand(self) -> dict[str, Decimal]:
        return self.availability.on_hand

    @property
    def reserved(self) -> dict[str, Decimal]:
        return self.availability.reserved

    @property
    def available(self) -> dict[str, Decimal]:
        return self.availability.available


class ReservationCalculator:
    """Computes availability from layers and open orders."""

    def __init__(
        self,
        session: Session,
        settings: CostingSettings | None = None,
        resolver: BundleResolver | None = None,
    ):
        self.session = session
        self.settings = settings or CostingSettings()
        self.resolver = resolver or BundleResolver(session, self.settings.query_chunk_size)
        self.inventory = InventorySelector(session)

    def compute_availability(self) -> AvailabilityReport:
        on_hand = self.inventory.on_hand_by_sku()

        rows = self.session.execute(
            select(SalesOrder).where(
                SalesOrder.shipped_at.is_(None),
                SalesOrder.is_cancelled.is_(False),
            )
        ).scalars()
        open_lines = [
            line
            for line in (row.to_order_line() for row in rows)
            if is_open_demand(line, self.settings.cancelled_statuses)
        ]

        self.resolver.preload(line.sku.strip() for line in open_lines)
        demand = []
        unconfigured: set[str] = set()
        unknown: set[str] = set()
        for line in open_lines:
            sku = line.sku.strip()
            try:
                resolved = self.resolver.resolve(sku)
            except ConfigurationError:
                unconfigured.add(sku)
                continue
            except ItemNotFoundError:
                unknown.add(sku)
                continue
            demand.append((resolved, Decimal(line.quantity)))

        if unconfigured:
            logger.warning(
                "reservation_unconfigured_bundles",
                extra={"bundle_skus": sorted(unconfigured)},
            )
        if unknown:
            logger.warning("reservation_unknown_skus", extra={"skus": sorted(unknown)})

        availability = compute_availability(on_hand=on_hand, open_demand=demand)
        logger.debug(
            "availability_computed",
            extra={"sku_count": len(availability.available), "open_lines": len(demand)},
        )
        return AvailabilityReport(availability, frozenset(unconfigured), frozenset(unknown))

    def bundle_sets(self, bundle_sku: str, report: AvailabilityReport | None = None) -> BundleSets:
        """
        Complete sets of ``bundle_sku`` buildable from available components.

        Raises:
            ConfigurationError: bundle has no components.
            InvalidBundleRecipeError: ``bundle_sku`` is not a bundle.
            ItemNotFoundError: ``bundle_sku`` is not in the catalog.
        """
        resolved = self.resolver.resolve(bundle_sku)
        if not isinstance(resolved, BundleSku):
            raise InvalidBundleRecipeError(bundle_sku, "item is not a bundle")
        report = report or self.compute_availability()
        return bundle_sets_available(resolved, report.available)
