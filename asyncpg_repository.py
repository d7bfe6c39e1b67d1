"""
asyncpg_repository.py — Production PostgreSQL catalog repository.

Implements the CatalogRepository interface using an asyncpg connection pool.
Rows are validated into models at this boundary; asyncpg errors surface as
CatalogError so callers can degrade a failed step to "no result".
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg
from pydantic import ValidationError

from models import Manufacturer, Product, RelatedKind
from repository import CatalogError, CatalogRepository, ProductFilter

logger = logging.getLogger(__name__)

# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Create connection pool and install the jsonb codec."""
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=30,
            init=self._init_connection,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
        )

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        """Per-connection setup: decode jsonb columns to Python objects."""
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            logger.info("Database pool closed")


# ── Helpers ──────────────────────────────────────────────────────────────────

# Whitelisted: table names are interpolated into SQL
RELATED_TABLES: dict[RelatedKind, str] = {
    RelatedKind.COMMUNICATION_OBJECTS: "communication_objects",
    RelatedKind.PARAMETERS: "parameters",
    RelatedKind.SPECIFICATIONS: "technical_specifications",
}

PRODUCT_COLUMNS = (
    "id, manufacturer_id, knx_product_id, order_number, name, description, "
    "category, medium_types, confidence_score, status, source_count, specifications"
)


def escape_like(value: str) -> str:
    """Escape ILIKE wildcards so search terms match literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _to_product(row: Any) -> Optional[Product]:
    if row is None:
        return None
    try:
        return Product.model_validate(dict(row))
    except ValidationError:
        logger.warning("Skipping malformed product row %s", row.get("id"))
        return None


# ── Catalog Repository ───────────────────────────────────────────────────────

class AsyncPGCatalogRepository(CatalogRepository):
    """
    Production repository over tables:
      manufacturers, products, communication_objects, parameters,
      technical_specifications (the last three keyed by product_id)
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    # ── Manufacturers ────────────────────────────────────────────────────

    async def find_manufacturer(self, code: str) -> Optional[Manufacturer]:
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id, knx_manufacturer_id, name, short_name, country,
                           hex_code, website_url, product_count,
                           application_program_count
                    FROM manufacturers
                    WHERE upper(knx_manufacturer_id) = upper($1)
                    """,
                    code,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise CatalogError(f"manufacturer lookup failed: {e}") from e
        return Manufacturer.model_validate(dict(row)) if row else None

    # ── Products ─────────────────────────────────────────────────────────

    async def find_products(self, manufacturer_id: str,
                            filters: ProductFilter) -> list[Product]:
        conditions, vals, idx = ["manufacturer_id = $1"], [manufacturer_id], 2

        if filters.order_number_prefix is not None:
            conditions.append(f"order_number ILIKE ${idx}")
            vals.append(f"{escape_like(filters.order_number_prefix)}%")
            idx += 1

        if filters.order_number_contains is not None:
            conditions.append(f"order_number ILIKE ${idx}")
            vals.append(f"%{escape_like(filters.order_number_contains)}%")
            idx += 1

        if filters.text is not None:
            conditions.append(f"(order_number ILIKE ${idx} OR name ILIKE ${idx})")
            vals.append(f"%{escape_like(filters.text)}%")
            idx += 1

        limit = max(1, min(int(filters.limit), 50))
        query = f"""
            SELECT {PRODUCT_COLUMNS}
            FROM products
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at, id
            LIMIT {limit}
        """
        try:
            async with self.db.acquire() as conn:
                rows = await conn.fetch(query, *vals)
        except (asyncpg.PostgresError, OSError) as e:
            raise CatalogError(f"product search failed: {e}") from e
        return [p for p in (_to_product(r) for r in rows) if p is not None]

    async def find_product_by_composite_id(self, knx_product_id: str) -> Optional[Product]:
        return await self._fetch_product("knx_product_id", knx_product_id)

    async def get_product(self, product_id: str) -> Optional[Product]:
        return await self._fetch_product("id", product_id)

    async def _fetch_product(self, column: str, value: str) -> Optional[Product]:
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {PRODUCT_COLUMNS} FROM products WHERE {column} = $1 LIMIT 1",
                    value,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise CatalogError(f"product fetch by {column} failed: {e}") from e
        return _to_product(row)

    async def insert_product(self, product: Product) -> Optional[Product]:
        data = product.model_dump(mode="json")
        cols = list(data.keys()) + ["created_at", "updated_at"]
        placeholders = ", ".join(f"${i+1}" for i in range(len(data)))
        query = (
            f"INSERT INTO products ({', '.join(cols)}) "
            f"VALUES ({placeholders}, now(), now()) "
            f"RETURNING {PRODUCT_COLUMNS}"
        )
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(query, *data.values())
        except (asyncpg.PostgresError, OSError) as e:
            raise CatalogError(f"product insert failed: {e}") from e
        logger.info("Created product %s (%s)", product.order_number, product.id)
        return _to_product(row)

    # ── Related records ──────────────────────────────────────────────────

    async def count_related(self, product_id: str, kind: RelatedKind) -> int:
        table = RELATED_TABLES[kind]
        try:
            async with self.db.acquire() as conn:
                count = await conn.fetchval(
                    f"SELECT COUNT(*) FROM {table} WHERE product_id = $1",
                    product_id,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise CatalogError(f"{table} count failed: {e}") from e
        return int(count or 0)

    # ── Health Check ─────────────────────────────────────────────────────

    async def health_check(self) -> dict:
        try:
            async with self.db.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                pool = self.db.pool
                return {
                    "status": "healthy",
                    "backend": "postgres",
                    "postgres_version": version,
                    "pool_size": pool.get_size(),
                    "pool_free": pool.get_idle_size(),
                }
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}
