"""
BundleResolver -- SKU to weighted components.

Responsibility:
    Load catalog rows and resolve a SKU into the tagged ``RegularSku`` /
    ``BundleSku`` variant exactly once per resolver instance.

Architecture position:
    Services -- read-only; never flushes.

Failure modes:
    - ItemNotFoundError for a SKU missing from the catalog.
    - ConfigurationError for a bundle with no component rows.
"""

from collections.abc import Iterable
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_engines.bundle import ResolvedSku, resolve_sku
from costing_kernel.exceptions import ItemNotFoundError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.inventory import BundleComponent, InventoryItem
from costing_kernel.utils.chunking import DEFAULT_CHUNK_SIZE, chunked

logger = get_logger("services.bundle_resolver")


class BundleResolver:
    """Resolves SKUs against the catalog, caching per instance."""

    def __init__(self, session: Session, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.session = session
        self.chunk_size = chunk_size
        self._cache: dict[str, ResolvedSku] = {}

    def resolve(self, sku: str) -> ResolvedSku:
        """
        Resolve one SKU.

        Raises:
            ItemNotFoundError: no catalog row for ``sku``.
            ConfigurationError: bundle with zero components.
        """
        cached = self._cache.get(sku)
        if cached is not None:
            return cached

        is_bundle = self.session.execute(
            select(InventoryItem.is_bundle).where(InventoryItem.sku_internal == sku)
        ).scalar_one_or_none()
        if is_bundle is None:
            raise ItemNotFoundError(sku)

        recipe: list[tuple[str, Decimal]] = []
        if is_bundle:
            recipe = [
                (row.component_sku, row.quantity)
                for row in self.session.execute(
                    select(BundleComponent).where(BundleComponent.bundle_sku == sku)
                ).scalars()
            ]
            if not recipe:
                logger.warning("bundle_has_no_components", extra={"bundle_sku": sku})

        resolved = resolve_sku(sku, is_bundle, recipe)
        self._cache[sku] = resolved
        return resolved

    def resolve_components(self, sku: str) -> list[tuple[str, Decimal]]:
        """(component_sku, quantity_per_unit) pairs; a regular SKU gives [(sku, 1)]."""
        return [(c.sku, c.quantity_per_unit) for c in self.resolve(sku).components]

    def preload(self, skus: Iterable[str]) -> None:
        """Warm the cache for many SKUs with bounded queries."""
        missing = [s for s in dict.fromkeys(skus) if s not in self._cache]
        for chunk in chunked(missing, self.chunk_size):
            kinds = dict(
                self.session.execute(
                    select(InventoryItem.sku_internal, InventoryItem.is_bundle).where(
                        InventoryItem.sku_internal.in_(chunk)
                    )
                ).all()
            )
            bundles = [sku for sku, is_bundle in kinds.items() if is_bundle]
            recipes: dict[str, list[tuple[str, Decimal]]] = {sku: [] for sku in bundles}
            if bundles:
                for row in self.session.execute(
                    select(BundleComponent).where(BundleComponent.bundle_sku.in_(bundles))
                ).scalars():
                    recipes[row.bundle_sku].append((row.component_sku, row.quantity))
            for sku, is_bundle in kinds.items():
                if not is_bundle:
                    self._cache[sku] = resolve_sku(sku, False)
                elif recipes[sku]:
                    self._cache[sku] = resolve_sku(sku, True, recipes[sku])
                # Unknown SKUs and empty bundles stay uncached so resolve() raises

    def invalidate(self, sku: str | None = None) -> None:
        """Drop cached resolutions after a recipe change."""
        if sku is None:
            self._cache.clear()
        else:
            self._cache.pop(sku, None)
