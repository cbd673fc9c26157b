"""Queue-driven product crawler.

- Postgres queue with skip-locked claims
- Single-attempt page fetcher
- JSON-LD / meta / DOM product extractor
- Worker pool with graceful shutdown
"""

from .extractor import extract_product_fields
from .fetcher import PageFetcher
from .mirror import ImageMirror
from .queue import Claim, QueueEntry, QueueStatus, ScrapeQueue
from .worker import LeaseReaper, Worker, WorkerConfig, WorkerPool

__all__ = [
    "extract_product_fields",
    "PageFetcher",
    "ImageMirror",
    "Claim",
    "QueueEntry",
    "QueueStatus",
    "ScrapeQueue",
    "LeaseReaper",
    "Worker",
    "WorkerConfig",
    "WorkerPool",
]
