"""Shared Postgres connection pool."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2.extensions import connection as PGConnection
from psycopg2.pool import ThreadedConnectionPool

LOGGER = logging.getLogger(__name__)


class Database:
    """Thread-safe connection pool with an explicit open/close lifecycle.

    One instance is created by the CLI and handed to the queue and the
    catalog store; workers never open connections on their own.
    """

    def __init__(self, dsn: str, *, min_connections: int = 1, max_connections: int = 10) -> None:
        """Initialize database handle.

        Parameters
        ----------
        dsn : str
            PostgreSQL connection string
        min_connections : int
            Connections opened eagerly by ``open()``
        max_connections : int
            Upper bound of concurrently checked-out connections
        """
        self.dsn = dsn
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._pool: Optional[ThreadedConnectionPool] = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None and not self._pool.closed

    def open(self) -> Database:
        """Open the pool. Raises ``psycopg2.OperationalError`` if unreachable."""
        if self.is_open:
            return self
        self._pool = ThreadedConnectionPool(
            self.min_connections,
            self.max_connections,
            dsn=self.dsn,
        )
        LOGGER.info("Opened connection pool (max=%d)", self.max_connections)
        return self

    def close(self) -> None:
        """Close every pooled connection."""
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()
            LOGGER.info("Closed connection pool")
        self._pool = None

    @contextmanager
    def connection(self) -> Iterator[PGConnection]:
        """Check out a connection for one transaction.

        Commits when the block exits normally and rolls back otherwise.
        """
        if not self.is_open:
            raise RuntimeError("Database pool is not open")
        conn = self._pool.getconn()
        try:
            yield conn
            conn.commit()
        except BaseException:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    def __enter__(self) -> Database:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
