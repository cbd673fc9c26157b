"""Durable URL queue backed by Postgres.

Claims use ``FOR UPDATE SKIP LOCKED`` so concurrent dispatchers never take the
same row and never wait on each other's candidates.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from psycopg2.extras import RealDictCursor, execute_values

from ..db import Database

LOGGER = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    """Queue row status. ``NULL`` in the table is read as ``TODO``."""

    TODO = "todo"
    WORKING = "working"
    DONE = "done"
    ERROR = "error"


@dataclass
class QueueEntry:
    """One queue row."""

    url: str
    status: QueueStatus = QueueStatus.TODO
    tries: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict) -> QueueEntry:
        return cls(
            url=row["url"],
            status=QueueStatus(row["status"] or QueueStatus.TODO.value),
            tries=row["tries"],
            last_error=row["last_error"],
            updated_at=row["updated_at"],
            lease_expires_at=row["lease_expires_at"],
        )

    def is_terminal(self, max_retries: int) -> bool:
        return self.status == QueueStatus.ERROR and self.tries >= max_retries


class Claim(NamedTuple):
    """A claimed URL; ``tries`` identifies this claim among later ones."""

    url: str
    tries: int


def dedupe_urls(urls: Iterable) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    seen = set()
    out: List[str] = []
    for url in urls:
        if not isinstance(url, str):
            continue
        url = url.strip()
        if not url or url in seen:
            continue
        seen.add(url)
        out.append(url)
    return out


class ScrapeQueue:
    """Postgres-based URL queue."""

    def __init__(self, database: Database, *, lease_seconds: int = 600) -> None:
        """Initialize queue.

        Parameters
        ----------
        database : Database
            Shared connection pool
        lease_seconds : int
            Lifetime of a claim before the reaper may release it
        """
        self.database = database
        self.lease_seconds = lease_seconds

    def ensure_table(self) -> None:
        """Create queue table if not exists."""
        create_sql = """
        CREATE TABLE IF NOT EXISTS scrape_queue (
            url              TEXT PRIMARY KEY,
            status           TEXT,
            tries            INTEGER NOT NULL DEFAULT 0,
            last_error       TEXT,
            updated_at       TIMESTAMPTZ,
            lease_expires_at TIMESTAMPTZ
        );

        CREATE INDEX IF NOT EXISTS scrape_queue_status_idx
            ON scrape_queue(status, updated_at);
        """

        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(create_sql)

        LOGGER.info("Ensured scrape_queue table exists")

    def seed(
        self,
        urls: Iterable[str],
        batch_size: int = 1000,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> int:
        """Insert URLs as ``todo`` rows, ignoring ones already queued.

        Parameters
        ----------
        urls : iterable of str
            URLs to enqueue; duplicates are collapsed
        batch_size : int
            Rows per INSERT statement
        progress : callable, optional
            Called with ``(seeded_so_far, total)`` after each batch

        Returns
        -------
        int
            Number of new rows inserted
        """
        unique_urls = dedupe_urls(urls)
        total = len(unique_urls)
        inserted = 0

        insert_sql = """
        INSERT INTO scrape_queue (url, status)
        VALUES %s
        ON CONFLICT (url) DO NOTHING
        """

        for start in range(0, total, batch_size):
            chunk = unique_urls[start:start + batch_size]
            with self.database.connection() as conn:
                with conn.cursor() as cur:
                    execute_values(
                        cur,
                        insert_sql,
                        [(url,) for url in chunk],
                        template="(%s, 'todo')",
                        page_size=len(chunk),
                    )
                    inserted += cur.rowcount
            if progress is not None:
                progress(start + len(chunk), total)

        LOGGER.info("Seeded %d new URL(s) out of %d", inserted, total)
        return inserted

    def claim(self, max_retries: int) -> Optional[Claim]:
        """Atomically claim the next eligible URL.

        Eligible rows are untouched (``NULL``/``todo``) or ``error`` rows still
        under ``max_retries``; never-attempted rows go first, then the oldest
        ``updated_at``. Rows locked by another dispatcher are skipped. With
        ``lease_seconds <= 0`` the claim carries no lease and is never reaped.

        Returns
        -------
        Claim or None
            Claimed URL with its post-claim ``tries``, or None when nothing
            is eligible
        """
        claim_sql = """
        UPDATE scrape_queue
        SET status = 'working',
            tries = tries + 1,
            updated_at = NOW(),
            lease_expires_at = CASE
                WHEN %(lease)s > 0 THEN NOW() + make_interval(secs => %(lease)s)
            END
        WHERE url = (
            SELECT url
            FROM scrape_queue
            WHERE status IS NULL
               OR status = 'todo'
               OR (status = 'error' AND tries < %(max_retries)s)
            ORDER BY updated_at ASC NULLS FIRST
            LIMIT 1
            FOR UPDATE SKIP LOCKED
        )
        RETURNING url, tries
        """

        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(claim_sql, {"lease": self.lease_seconds, "max_retries": max_retries})
                row = cur.fetchone()

        if row is None:
            return None

        LOGGER.debug("Claimed %s (try %d)", row[0], row[1])
        return Claim(url=row[0], tries=row[1])

    def claim_next(self, max_retries: int) -> Optional[str]:
        """Claim the next eligible URL and return just the URL."""
        claim = self.claim(max_retries)
        return claim.url if claim else None

    def _finish(self, url: str, assignments: str, params: Dict, tries: Optional[int]) -> bool:
        update_sql = f"""
        UPDATE scrape_queue
        SET {assignments},
            lease_expires_at = NULL,
            updated_at = NOW()
        WHERE url = %(url)s
        """
        if tries is not None:
            update_sql += " AND status = 'working' AND tries = %(tries)s"

        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(update_sql, {**params, "url": url, "tries": tries})
                updated = cur.rowcount > 0

        if not updated and tries is not None:
            LOGGER.warning("Claim on %s (try %s) was lost; outcome not recorded", url, tries)
        return updated

    def mark_done(self, url: str, tries: Optional[int] = None) -> bool:
        """Mark URL as done.

        When ``tries`` is given the update only applies while that claim is
        still the current one.

        Returns
        -------
        bool
            False if the claim was lost to a reap and a newer claim
        """
        return self._finish(url, "status = 'done', last_error = NULL", {}, tries)

    def mark_error(self, url: str, error: str, tries: Optional[int] = None) -> bool:
        """Mark URL as failed; a later claim retries it while under the ceiling."""
        updated = self._finish(url, "status = 'error', last_error = %(error)s", {"error": error}, tries)
        if updated:
            LOGGER.warning("Marked %s as error: %s", url, error)
        return updated

    def reap_expired(self, max_retries: int) -> int:
        """Release ``working`` rows whose lease has expired.

        Rows with retries left go back to ``todo``; the rest become terminal
        ``error`` rows. ``tries`` is left as is.

        Returns
        -------
        int
            Number of rows released
        """
        reap_sql = """
        UPDATE scrape_queue
        SET status = CASE WHEN tries < %(max_retries)s THEN 'todo' ELSE 'error' END,
            last_error = CASE WHEN tries < %(max_retries)s THEN last_error ELSE 'lease expired' END,
            lease_expires_at = NULL,
            updated_at = NOW()
        WHERE url IN (
            SELECT url
            FROM scrape_queue
            WHERE status = 'working'
              AND lease_expires_at IS NOT NULL
              AND lease_expires_at < NOW()
            FOR UPDATE SKIP LOCKED
        )
        """

        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(reap_sql, {"max_retries": max_retries})
                count = cur.rowcount

        if count > 0:
            LOGGER.warning("Released %d expired claim(s)", count)

        return count

    def get(self, url: str) -> Optional[QueueEntry]:
        """Fetch a single queue row."""
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT * FROM scrape_queue WHERE url = %s", (url,))
                row = cur.fetchone()
        return QueueEntry.from_row(row) if row else None

    def get_stats(self) -> Dict[str, int]:
        """Get queue statistics."""
        stats_sql = """
        SELECT COALESCE(status, 'todo') AS status, COUNT(*) AS count
        FROM scrape_queue
        GROUP BY 1
        """

        stats: Dict[str, int] = {}
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(stats_sql)
                for row in cur.fetchall():
                    stats[row["status"]] = row["count"]

        return stats

    def dead_letters(self, max_retries: int, limit: int = 100) -> List[QueueEntry]:
        """List terminal rows (``error`` at the retry ceiling)."""
        select_sql = """
        SELECT *
        FROM scrape_queue
        WHERE status = 'error' AND tries >= %s
        ORDER BY updated_at DESC
        LIMIT %s
        """

        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(select_sql, (max_retries, limit))
                return [QueueEntry.from_row(row) for row in cur.fetchall()]
