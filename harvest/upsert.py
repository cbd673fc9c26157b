"""Database helpers for idempotent catalog upserts."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import psycopg2
from psycopg2.extensions import connection as PGConnection
from psycopg2.extras import Json, execute_values

from harvest.db import Database
from harvest.errors import PersistError
from harvest.models import ImageRow, ProductFields

LOGGER = logging.getLogger(__name__)

# Columns subject to the merge policy; handle and source_url always take the new value.
MERGED_COLUMNS = (
    "title",
    "number",
    "brand",
    "series",
    "category",
    "release_date",
    "price",
    "currency",
    "image_url",
    "raw",
)


class MergePolicy(str, Enum):
    """How a new extraction is merged into an existing catalog row.

    STICKY: new non-null values win, new nulls never erase stored values.
    OVERWRITE: the new extraction replaces every column, nulls included.
    FIRST_WRITE: stored non-null values are never replaced.
    """

    STICKY = "sticky"
    OVERWRITE = "overwrite"
    FIRST_WRITE = "first_write"


def merge_expression(policy: MergePolicy, column: str, incoming: str, table: str = "catalog_products") -> str:
    """SQL expression for ``column`` given the incoming value expression."""
    stored = f"{table}.{column}"
    if policy == MergePolicy.OVERWRITE:
        return incoming
    if policy == MergePolicy.FIRST_WRITE:
        return f"COALESCE({stored}, {incoming})"
    return f"COALESCE({incoming}, {stored})"


def merge_assignments(policy: MergePolicy, *, excluded: bool) -> str:
    """SET clause body for an update (``excluded=False``) or ON CONFLICT branch."""
    lines = []
    for column in MERGED_COLUMNS:
        incoming = f"EXCLUDED.{column}" if excluded else f"%({column})s"
        lines.append(f"{column} = {merge_expression(policy, column, incoming)}")
    lines.append("updated_at = NOW()")
    return ",\n    ".join(lines)


def _blank_to_none(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    if isinstance(value, (list, tuple)) and not value:
        return None
    return value


def product_params(source_url: str, fields: ProductFields, raw_snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Statement parameters with empty strings and lists normalized to NULL."""
    return {
        "handle": fields.handle,
        "source_url": source_url,
        "title": _blank_to_none(fields.title),
        "number": _blank_to_none(fields.number),
        "brand": _blank_to_none(fields.brand),
        "series": _blank_to_none(fields.series),
        "category": _blank_to_none(fields.category),
        "release_date": _blank_to_none(fields.release_date),
        "price": fields.price,
        "currency": _blank_to_none(fields.currency),
        "image_url": _blank_to_none(fields.image_url),
        "raw": Json(raw_snapshot) if raw_snapshot else None,
    }


def ensure_catalog_tables(conn: PGConnection) -> None:
    """Create catalog and image tables if they do not exist."""
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS catalog_products (
                id              BIGSERIAL PRIMARY KEY,
                handle          TEXT UNIQUE,
                title           TEXT,
                number          TEXT,
                brand           TEXT,
                series          TEXT[],
                category        TEXT[],
                release_date    TEXT,
                price           NUMERIC,
                currency        TEXT,
                source_url      TEXT UNIQUE,
                image_url       TEXT,
                image_mirror_id TEXT,
                raw             JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS catalog_product_images (
                id        BIGSERIAL PRIMARY KEY,
                handle    TEXT REFERENCES catalog_products(handle)
                              ON DELETE CASCADE ON UPDATE CASCADE,
                url       TEXT,
                mirror_id TEXT,
                position  INTEGER,
                width     INTEGER,
                height    INTEGER,
                UNIQUE (handle, url)
            );
            """
        )
        cur.execute("SELECT 1 FROM pg_extension WHERE extname = 'pg_trgm'")
        if cur.fetchone() is not None:
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS catalog_products_title_trgm
                    ON catalog_products USING gin (title gin_trgm_ops);
                """
            )


def upsert_product(
    conn: PGConnection,
    source_url: str,
    fields: ProductFields,
    raw_snapshot: Optional[Dict[str, Any]] = None,
    policy: MergePolicy = MergePolicy.STICKY,
) -> str:
    """Insert or merge a catalog row and return its handle.

    The row is matched by ``source_url`` first and by ``handle`` second.
    """
    params = product_params(source_url, fields, raw_snapshot)
    if params["raw"] is None:
        params["raw"] = Json({})

    with conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE catalog_products
            SET handle = %(handle)s,
                {merge_assignments(policy, excluded=False)}
            WHERE source_url = %(source_url)s
            RETURNING handle;
            """,
            params,
        )
        row = cur.fetchone()
        if row is not None:
            return row[0]

        cur.execute(
            f"""
            INSERT INTO catalog_products (
                handle, title, number, brand, series, category, release_date,
                price, currency, source_url, image_url, raw, updated_at
            )
            VALUES (
                %(handle)s, %(title)s, %(number)s, %(brand)s, %(series)s, %(category)s, %(release_date)s,
                %(price)s, %(currency)s, %(source_url)s, %(image_url)s, %(raw)s, NOW()
            )
            ON CONFLICT (handle) DO UPDATE
            SET source_url = EXCLUDED.source_url,
                {merge_assignments(policy, excluded=True)}
            RETURNING handle;
            """,
            params,
        )
        row = cur.fetchone()
    return row[0] if row else fields.handle


def upsert_images(
    conn: PGConnection,
    handle: str,
    images: List[str],
    mirror_ids: Optional[Mapping[str, str]] = None,
) -> int:
    """Upsert gallery rows for ``handle``.

    A stored position only moves down (earliest rank wins) and a stored
    mirror id is never replaced.

    Returns
    -------
    int
        Number of rows written
    """
    mirror_ids = mirror_ids or {}
    rows: List[ImageRow] = []
    seen = set()
    for position, url in enumerate(images):
        if not url or url in seen:
            continue
        seen.add(url)
        rows.append(ImageRow(handle=handle, url=url, position=position, mirror_id=mirror_ids.get(url)))

    if not rows:
        return 0

    with conn.cursor() as cur:
        execute_values(
            cur,
            """
            INSERT INTO catalog_product_images (handle, url, mirror_id, position, width, height)
            VALUES %s
            ON CONFLICT (handle, url) DO UPDATE
            SET mirror_id = COALESCE(catalog_product_images.mirror_id, EXCLUDED.mirror_id),
                position = LEAST(catalog_product_images.position, EXCLUDED.position),
                width = COALESCE(EXCLUDED.width, catalog_product_images.width),
                height = COALESCE(EXCLUDED.height, catalog_product_images.height);
            """,
            [(r.handle, r.url, r.mirror_id, r.position, r.width, r.height) for r in rows],
            page_size=len(rows),
        )
    return len(rows)


def backfill_primary_mirror_id(conn: PGConnection, handle: str, mirror_id: Optional[str]) -> bool:
    """Set the product's primary mirror id only if it is still empty."""
    if not mirror_id:
        return False
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE catalog_products
            SET image_mirror_id = %s,
                updated_at = NOW()
            WHERE handle = %s
              AND (image_mirror_id IS NULL OR image_mirror_id = '');
            """,
            (mirror_id, handle),
        )
        return cur.rowcount > 0


class CatalogStore:
    """Transactional facade over the upsert helpers used by workers."""

    def __init__(self, database: Database, policy: MergePolicy = MergePolicy.STICKY) -> None:
        self.database = database
        self.policy = policy

    def ensure_tables(self) -> None:
        with self.database.connection() as conn:
            ensure_catalog_tables(conn)
        LOGGER.info("Ensured catalog tables exist")

    def save_product(self, source_url: str, fields: ProductFields, raw_snapshot: Dict[str, Any]) -> str:
        try:
            with self.database.connection() as conn:
                return upsert_product(conn, source_url, fields, raw_snapshot, self.policy)
        except psycopg2.Error as exc:
            raise PersistError(f"Product upsert failed: {exc}") from exc

    def save_images(self, handle: str, images: List[str], mirror_ids: Optional[Mapping[str, str]] = None) -> int:
        mirror_ids = mirror_ids or {}
        try:
            with self.database.connection() as conn:
                written = upsert_images(conn, handle, images, mirror_ids)
                if images:
                    backfill_primary_mirror_id(conn, handle, mirror_ids.get(images[0]))
                return written
        except psycopg2.Error as exc:
            raise PersistError(f"Image upsert failed: {exc}") from exc
