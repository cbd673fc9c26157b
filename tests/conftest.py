"""Shared fixtures.

Tests that need Postgres use the ``database`` fixture, which points at the
disposable database in ``PG_DSN`` and is skipped when it is not set. The
fixture truncates the harvest tables, so never point it at real data.
"""
import os

import pytest

from harvest.crawler.queue import ScrapeQueue
from harvest.db import Database
from harvest.upsert import CatalogStore


@pytest.fixture
def database():
    dsn = os.getenv("PG_DSN")
    if not dsn:
        pytest.skip("PG_DSN is not set")

    db = Database(dsn, max_connections=20).open()
    ScrapeQueue(db).ensure_table()
    CatalogStore(db).ensure_tables()
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("TRUNCATE scrape_queue")
            cur.execute("TRUNCATE catalog_products CASCADE")
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def queue(database):
    return ScrapeQueue(database, lease_seconds=600)
