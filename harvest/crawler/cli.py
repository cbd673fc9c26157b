"""CLI for the product harvester."""
from __future__ import annotations

import json
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

import click
import psycopg2

from ..config import HarvestConfig, load_env_file
from ..db import Database
from ..upsert import CatalogStore, MergePolicy
from .fetcher import PageFetcher
from .mirror import ImageMirror
from .queue import ScrapeQueue, dedupe_urls
from .worker import LeaseReaper, Worker, WorkerConfig, WorkerPool

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def load_seed_urls(path: str | Path) -> List[str]:
    """Read URLs from a JSON array or an object with a ``urls`` array."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    urls = data.get("urls", []) if isinstance(data, dict) else data
    if not isinstance(urls, list):
        raise ValueError("expected a JSON array of URLs or an object with a 'urls' array")
    return dedupe_urls(urls)


def _open_database(config: HarvestConfig, max_connections: int = 4) -> Database:
    """Open the pool and ensure the schema; unreachable store is fatal."""
    database = Database(config.database_url, max_connections=max_connections)
    try:
        database.open()
        ScrapeQueue(database).ensure_table()
        CatalogStore(database).ensure_tables()
    except psycopg2.Error as exc:
        database.close()
        LOGGER.error("Cannot reach queue store: %s", exc)
        raise click.ClickException(f"Cannot reach queue store: {exc}") from exc
    return database


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Product catalog harvester."""
    load_env_file()
    _configure_logging(verbose)
    try:
        ctx.obj = HarvestConfig.from_env()
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


@cli.command()
@click.option(
    "--file",
    "input_file",
    type=click.Path(dir_okay=False),
    help="JSON file with URLs (defaults to HARVEST_URLS_JSON)",
)
@click.option(
    "--batch-size",
    default=1000,
    show_default=True,
    type=click.IntRange(min=1),
    help="Rows inserted per statement",
)
@click.pass_obj
def seed(config: HarvestConfig, input_file: Optional[str], batch_size: int) -> None:
    """Insert URLs from a seed file into the queue."""
    path = Path(input_file or config.urls_file)
    if not path.exists():
        raise click.ClickException(f"Seed file not found: {path}")
    try:
        urls = load_seed_urls(path)
    except ValueError as exc:
        raise click.ClickException(f"Invalid seed file {path}: {exc}") from exc
    if not urls:
        raise click.ClickException("No URLs in input file.")

    click.echo(f"Seeding {len(urls)} URL(s) into scrape_queue ...")
    database = _open_database(config)
    try:
        queue = ScrapeQueue(database)
        inserted = queue.seed(
            urls,
            batch_size=batch_size,
            progress=lambda done, total: click.echo(f"  seeded {done} / {total}"),
        )
    finally:
        database.close()

    click.echo(f"Seed complete: {inserted} new, {len(urls) - inserted} already queued")


@cli.command()
@click.option("--concurrency", type=click.IntRange(min=1), help="Number of workers")
@click.option("--max-retries", type=click.IntRange(min=1), help="Claims allowed per URL")
@click.option("--max-tasks", type=int, help="Max URLs per worker before exit (for testing)")
@click.pass_obj
def crawl(
    config: HarvestConfig,
    concurrency: Optional[int],
    max_retries: Optional[int],
    max_tasks: Optional[int],
) -> None:
    """Run workers until interrupted."""
    concurrency = concurrency or config.concurrency
    max_retries = max_retries or config.max_retries

    policy = MergePolicy(config.merge_policy)

    database = _open_database(config, max_connections=concurrency + 2)
    queue = ScrapeQueue(database, lease_seconds=config.lease_seconds)
    store = CatalogStore(database, policy)
    mirror = ImageMirror(config.cf_account_id, config.cf_images_token)
    if mirror.enabled:
        click.echo("Image mirroring enabled")

    stop_event = threading.Event()
    fetchers = [
        PageFetcher(user_agent=config.user_agent, timeout=config.fetch_timeout)
        for _ in range(concurrency)
    ]
    workers = [
        Worker(
            WorkerConfig(worker_id=f"W{i + 1}", max_retries=max_retries, max_tasks=max_tasks),
            queue,
            store,
            fetchers[i],
            mirror,
            stop_event=stop_event,
        )
        for i in range(concurrency)
    ]
    reaper = None
    if config.lease_seconds > 0:
        reaper = LeaseReaper(queue, max_retries, min(60.0, config.lease_seconds / 2), stop_event)

    click.echo(f"Starting {concurrency} worker(s)...")
    try:
        WorkerPool(workers, stop_event=stop_event, reaper=reaper).run()
    finally:
        for fetcher in fetchers:
            fetcher.close()
        mirror.close()
        database.close()


@cli.command()
@click.pass_obj
def stats(config: HarvestConfig) -> None:
    """Show queue statistics."""
    database = _open_database(config)
    try:
        counts = ScrapeQueue(database).get_stats()
    finally:
        database.close()

    click.echo("\nQueue Statistics\n" + "=" * 40)
    click.echo(f"Total URLs: {sum(counts.values())}")
    for status, count in sorted(counts.items()):
        click.echo(f"  {status:15s}: {count:6d}")
    click.echo()


@cli.command()
@click.option("--limit", default=50, show_default=True, type=int, help="Rows to show")
@click.option("--max-retries", type=click.IntRange(min=1), help="Retry ceiling")
@click.pass_obj
def dead(config: HarvestConfig, limit: int, max_retries: Optional[int]) -> None:
    """List URLs that exhausted their retries."""
    database = _open_database(config)
    try:
        entries = ScrapeQueue(database).dead_letters(max_retries or config.max_retries, limit)
    finally:
        database.close()

    if not entries:
        click.echo("No permanently failed URLs")
        return
    for entry in entries:
        click.echo(f"{entry.tries:3d}  {entry.url}  {entry.last_error or ''}")


@cli.command()
@click.option("--max-retries", type=click.IntRange(min=1), help="Retry ceiling")
@click.pass_obj
def reap(config: HarvestConfig, max_retries: Optional[int]) -> None:
    """Release claims whose lease expired."""
    database = _open_database(config)
    try:
        count = ScrapeQueue(database).reap_expired(max_retries or config.max_retries)
    finally:
        database.close()
    click.echo(f"Released {count} expired claim(s)")


if __name__ == "__main__":
    cli()
