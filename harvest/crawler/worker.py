"""Worker threads that drain the scrape queue into the catalog."""
from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from ..models import ProductFields
from .extractor import extract_product_fields
from .fetcher import PageFetcher
from .mirror import ImageMirror
from .queue import Claim

LOGGER = logging.getLogger(__name__)


class ClaimQueue(Protocol):
    def claim(self, max_retries: int) -> Optional[Claim]: ...

    def mark_done(self, url: str, tries: Optional[int] = None) -> bool: ...

    def mark_error(self, url: str, error: str, tries: Optional[int] = None) -> bool: ...


class ProductStore(Protocol):
    def save_product(self, source_url: str, fields: ProductFields, raw_snapshot: dict) -> str: ...

    def save_images(self, handle: str, images: List[str], mirror_ids: Optional[dict] = None) -> int: ...


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_id: str
    max_retries: int = 3
    idle_sleep: float = 1.0  # Seconds to wait when the queue is empty
    error_backoff: float = 0.25  # Seconds to wait after a failed URL
    max_tasks: Optional[int] = None  # Max claims before the worker exits


def describe_error(exc: BaseException) -> str:
    message = str(exc) or repr(exc)
    return f"{type(exc).__name__}: {message}"


class Worker:
    """One claim-process-mark loop."""

    def __init__(
        self,
        config: WorkerConfig,
        queue: ClaimQueue,
        store: ProductStore,
        fetcher: PageFetcher,
        mirror: Optional[ImageMirror] = None,
        *,
        stop_event: Optional[threading.Event] = None,
        extract: Callable[[str, str], ProductFields] = extract_product_fields,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        config : WorkerConfig
            Worker configuration
        queue : ClaimQueue
            Queue to claim URLs from and report outcomes to
        store : ProductStore
            Catalog persistence
        fetcher : PageFetcher
            Page fetcher owned by this worker
        mirror : ImageMirror, optional
            Image mirror; skipped when None or disabled
        stop_event : threading.Event, optional
            Shared shutdown signal checked before every claim
        """
        self.config = config
        self.queue = queue
        self.store = store
        self.fetcher = fetcher
        self.mirror = mirror
        self.stop_event = stop_event or threading.Event()
        self.extract = extract
        self.tasks_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0

    def run(self) -> None:
        """Run until the stop event is set or ``max_tasks`` is reached."""
        LOGGER.info("Starting worker %s", self.config.worker_id)

        while not self.stop_event.is_set():
            if self.config.max_tasks is not None and self.tasks_processed >= self.config.max_tasks:
                LOGGER.info("Worker %s reached max tasks (%d)", self.config.worker_id, self.config.max_tasks)
                break

            try:
                claim = self.queue.claim(self.config.max_retries)
            except Exception as exc:
                LOGGER.error("Worker %s claim failed: %s", self.config.worker_id, exc, exc_info=True)
                self.stop_event.wait(self.config.error_backoff)
                continue

            if claim is None:
                LOGGER.debug("No URLs available, sleeping...")
                self.stop_event.wait(self.config.idle_sleep)
                continue

            self.tasks_processed += 1
            if not self.process(claim):
                self.stop_event.wait(self.config.error_backoff)

        self._log_stats()

    def process(self, claim: Claim) -> bool:
        """Fetch, extract, persist and mark one claimed URL.

        The outcome is recorded only while this claim is still current; a
        claim that was reaped and handed to another worker is left alone.

        Returns
        -------
        bool
            True if the URL was marked done
        """
        url = claim.url
        start_time = time.time()
        try:
            handle = self._harvest(url)
            recorded = self.queue.mark_done(url, tries=claim.tries)
        except Exception as exc:
            self.tasks_failed += 1
            LOGGER.warning("[%s] failed %s: %s", self.config.worker_id, url, exc)
            try:
                self.queue.mark_error(url, describe_error(exc), tries=claim.tries)
            except Exception as mark_exc:
                LOGGER.error("Could not record failure for %s: %s", url, mark_exc, exc_info=True)
            return False

        if not recorded:
            LOGGER.warning("[%s] lost claim on %s before finishing", self.config.worker_id, url)
            return False

        self.tasks_succeeded += 1
        LOGGER.info("[%s] done %s -> %s (%.2fs)", self.config.worker_id, url, handle, time.time() - start_time)
        return True

    def _harvest(self, url: str) -> str:
        html = self.fetcher.fetch(url)
        fields = self.extract(html, url)

        parsed_at = datetime.now(timezone.utc).isoformat()
        handle = self.store.save_product(url, fields, fields.snapshot(url, parsed_at))

        mirror_ids = {}
        if self.mirror is not None and self.mirror.enabled:
            mirror_ids = self.mirror.mirror_all(handle, fields.images)

        self.store.save_images(handle, fields.images, mirror_ids)
        return handle

    def _log_stats(self) -> None:
        LOGGER.info(
            "Worker %s shutting down: processed=%d, succeeded=%d, failed=%d",
            self.config.worker_id,
            self.tasks_processed,
            self.tasks_succeeded,
            self.tasks_failed,
        )


class LeaseReaper:
    """Periodically releases claims whose lease expired."""

    def __init__(self, queue, max_retries: int, interval: float, stop_event: threading.Event) -> None:
        self.queue = queue
        self.max_retries = max_retries
        self.interval = interval
        self.stop_event = stop_event

    def run(self) -> None:
        while not self.stop_event.wait(self.interval):
            try:
                self.queue.reap_expired(self.max_retries)
            except Exception as exc:
                LOGGER.error("Lease reaper failed: %s", exc, exc_info=True)


class WorkerPool:
    """Runs N workers in threads and stops them on SIGINT/SIGTERM."""

    def __init__(
        self,
        workers: List[Worker],
        *,
        stop_event: threading.Event,
        stagger: float = 0.15,
        reaper: Optional[LeaseReaper] = None,
        handle_signals: bool = True,
    ) -> None:
        self.workers = workers
        self.stop_event = stop_event
        self.stagger = stagger
        self.reaper = reaper
        self.handle_signals = handle_signals
        self._threads: List[threading.Thread] = []

    def _handle_shutdown(self, signum, frame) -> None:
        LOGGER.info("Received shutdown signal %s, finishing in-flight URLs...", signum)
        self.stop_event.set()

    def _setup_signal_handlers(self) -> None:
        if self.handle_signals and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

    def start(self) -> None:
        self._setup_signal_handlers()

        if self.reaper is not None:
            thread = threading.Thread(target=self.reaper.run, name="lease-reaper", daemon=True)
            thread.start()

        for worker in self.workers:
            if self.stop_event.is_set():
                break
            thread = threading.Thread(target=worker.run, name=worker.config.worker_id)
            thread.start()
            self._threads.append(thread)
            # Stagger so workers don't hit the queue and origin in one burst.
            self.stop_event.wait(self.stagger)

    def join(self) -> None:
        # Poll with a timeout so the main thread keeps receiving signals.
        for thread in self._threads:
            while thread.is_alive():
                thread.join(timeout=0.5)

    def stop(self) -> None:
        self.stop_event.set()

    def run(self) -> None:
        LOGGER.info("Starting %d worker(s)", len(self.workers))
        self.start()
        self.join()
        self.stop_event.set()
        LOGGER.info(
            "All workers stopped: succeeded=%d, failed=%d",
            sum(w.tasks_succeeded for w in self.workers),
            sum(w.tasks_failed for w in self.workers),
        )
