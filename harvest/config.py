"""Runtime configuration loaded from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) LegendaryCollectiblesBot/1.0 "
    "(+https://legendary-collectibles.com)"
)

# Values accepted by ``harvest.upsert.MergePolicy``.
MERGE_POLICIES = ("sticky", "overwrite", "first_write")


def load_env_file(path: Optional[Path] = None) -> None:
    """Load ``.env`` from the project root without overriding the shell."""
    load_dotenv(path or BASE_DIR / ".env", override=False)


def get_database_url() -> str:
    """Get database connection string from environment."""
    if conn_str := os.getenv("DATABASE_URL") or os.getenv("PG_DSN"):
        return conn_str

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "harvest")
    password = os.getenv("PG_PASS", "harvest")
    database = os.getenv("PG_DB", "catalog")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _choice_env(name: str, default: str, choices: Tuple[str, ...]) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


@dataclass
class HarvestConfig:
    """Harvester settings.

    Attributes
    ----------
    database_url : str
        Postgres connection string for the queue and catalog store.
    urls_file : str
        Seed file with a JSON array of URLs or ``{"urls": [...]}``.
    concurrency : int
        Number of worker threads started by ``crawl``.
    max_retries : int
        Claims allowed per URL before an ``error`` row becomes terminal.
    lease_seconds : int
        How long a ``working`` row may stay claimed before the reaper
        releases it. ``0`` disables reaping.
    merge_policy : str
        Catalog merge policy name (``sticky``, ``overwrite``, ``first_write``).
    """

    database_url: str
    urls_file: str = "data/sitemapProductUrls.json"
    concurrency: int = 3
    max_retries: int = 3
    lease_seconds: int = 600
    merge_policy: str = "sticky"
    fetch_timeout: float = 20.0
    user_agent: str = DEFAULT_USER_AGENT
    cf_account_id: Optional[str] = None
    cf_images_token: Optional[str] = None

    @property
    def mirror_enabled(self) -> bool:
        """Image mirroring needs both the account id and the token."""
        return bool(self.cf_account_id and self.cf_images_token)

    @classmethod
    def from_env(cls) -> HarvestConfig:
        """Build configuration from environment variables."""
        return cls(
            database_url=get_database_url(),
            urls_file=os.getenv("HARVEST_URLS_JSON", "data/sitemapProductUrls.json"),
            concurrency=_int_env("HARVEST_CONCURRENCY", 3),
            max_retries=_int_env("HARVEST_MAX_RETRIES", 3),
            lease_seconds=_int_env("HARVEST_LEASE_SECONDS", 600),
            merge_policy=_choice_env("HARVEST_MERGE_POLICY", "sticky", MERGE_POLICIES),
            fetch_timeout=_float_env("HARVEST_FETCH_TIMEOUT", 20.0),
            user_agent=os.getenv("SCRAPE_UA") or DEFAULT_USER_AGENT,
            cf_account_id=os.getenv("CF_ACCOUNT_ID") or os.getenv("NEXT_PUBLIC_CF_ACCOUNT_ID"),
            cf_images_token=os.getenv("CF_IMAGES_TOKEN"),
        )
