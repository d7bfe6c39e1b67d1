"""
KNX Resolver — Catalog Repository

The narrow store contract the resolver needs, plus an in-memory
implementation for local development and tests. The production
implementation lives in asyncpg_repository.py.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from models import Manufacturer, Product, RelatedKind

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Raised by a repository when the underlying store fails."""


@dataclass(frozen=True)
class ProductFilter:
    """
    Case-insensitive product filter within one manufacturer.

    order_number_prefix:   order_number ILIKE 'x%'
    order_number_contains: order_number ILIKE '%x%'
    text:                  order_number ILIKE '%x%' OR name ILIKE '%x%'
    """
    order_number_prefix: Optional[str] = None
    order_number_contains: Optional[str] = None
    text: Optional[str] = None
    limit: int = 5


# ============================================================
# Repository Interface
# ============================================================

class CatalogRepository:
    """
    Abstract catalog access. In production, backed by asyncpg.
    Implementations return validated models, never raw rows.
    """

    async def find_manufacturer(self, code: str) -> Optional[Manufacturer]:
        raise NotImplementedError

    async def find_products(self, manufacturer_id: str,
                            filters: ProductFilter) -> list[Product]:
        raise NotImplementedError

    async def find_product_by_composite_id(self, knx_product_id: str) -> Optional[Product]:
        raise NotImplementedError

    async def get_product(self, product_id: str) -> Optional[Product]:
        raise NotImplementedError

    async def insert_product(self, product: Product) -> Optional[Product]:
        raise NotImplementedError

    async def count_related(self, product_id: str, kind: RelatedKind) -> int:
        raise NotImplementedError

    async def health_check(self) -> dict:
        return {"status": "healthy"}


# ============================================================
# In-Memory Repository (for testing / local dev)
# ============================================================

def _ci_contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle.lower() in value.lower()


def _ci_startswith(value: Optional[str], prefix: str) -> bool:
    return bool(value) and value.lower().startswith(prefix.lower())


class InMemoryCatalogRepository(CatalogRepository):
    """In-memory implementation for testing without a database."""

    def __init__(self):
        self.manufacturers: dict[str, Manufacturer] = {}
        self.products: dict[str, Product] = {}
        self.related: dict[tuple[str, RelatedKind], int] = {}
        # Injected failures: method name -> exception to raise
        self.failures: dict[str, Exception] = {}
        self._code_index: dict[str, str] = {}

    def _maybe_fail(self, method: str) -> None:
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    # --- seeding helpers ---

    def add_manufacturer(self, manufacturer: Manufacturer) -> Manufacturer:
        self.manufacturers[manufacturer.id] = manufacturer
        self._code_index[manufacturer.knx_manufacturer_id.upper()] = manufacturer.id
        return manufacturer

    def add_product(self, product: Product) -> Product:
        self.products[product.id] = product
        return product

    def set_related_count(self, product_id: str, kind: RelatedKind, count: int) -> None:
        self.related[(product_id, kind)] = count

    # --- CatalogRepository ---

    async def find_manufacturer(self, code: str) -> Optional[Manufacturer]:
        self._maybe_fail("find_manufacturer")
        mid = self._code_index.get(code.upper())
        return self.manufacturers.get(mid) if mid else None

    async def find_products(self, manufacturer_id: str,
                            filters: ProductFilter) -> list[Product]:
        self._maybe_fail("find_products")
        results = []
        # Insertion order stands in for the database's natural order
        for p in self.products.values():
            if p.manufacturer_id != manufacturer_id:
                continue
            if filters.order_number_prefix is not None and not _ci_startswith(
                    p.order_number, filters.order_number_prefix):
                continue
            if filters.order_number_contains is not None and not _ci_contains(
                    p.order_number, filters.order_number_contains):
                continue
            if filters.text is not None and not (
                    _ci_contains(p.order_number, filters.text)
                    or _ci_contains(p.name, filters.text)):
                continue
            results.append(p)
            if len(results) >= filters.limit:
                break
        return results

    async def find_product_by_composite_id(self, knx_product_id: str) -> Optional[Product]:
        self._maybe_fail("find_product_by_composite_id")
        for p in self.products.values():
            if p.knx_product_id == knx_product_id:
                return p
        return None

    async def get_product(self, product_id: str) -> Optional[Product]:
        self._maybe_fail("get_product")
        return self.products.get(product_id)

    async def insert_product(self, product: Product) -> Optional[Product]:
        self._maybe_fail("insert_product")
        if product.id in self.products:
            raise CatalogError(f"Duplicate product id {product.id}")
        if product.knx_product_id and await self.find_product_by_composite_id(
                product.knx_product_id):
            raise CatalogError(f"Duplicate knx_product_id {product.knx_product_id}")
        self.products[product.id] = product.model_copy(deep=True)
        logger.info("Created product %s (%s)", product.order_number, product.id)
        return self.products[product.id]

    async def count_related(self, product_id: str, kind: RelatedKind) -> int:
        self._maybe_fail("count_related")
        return self.related.get((product_id, kind), 0)

    async def health_check(self) -> dict:
        return {
            "status": "healthy",
            "backend": "memory",
            "manufacturers": len(self.manufacturers),
            "products": len(self.products),
        }
