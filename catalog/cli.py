"""CLI for the catalog ingestion pipeline."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click
import orjson

from .config import PipelineConfig, load_config
from .errors import ImageFetchError, RescrapeError, StoreError
from .images import ContentAddressedCache, ImageResolver
from .models import Platform
from .pipeline import CatalogService, open_pipeline
from .providers import get_adapter
from .quality import QualityTier
from .scheduler import StalenessScheduler
from .store import ListingStore, create_store

LOGGER = logging.getLogger(__name__)

PLATFORM_CHOICE = click.Choice([p.value for p in Platform])


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def _dump(data) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode("utf-8")


def _open_store(config: PipelineConfig) -> ListingStore:
    if not config.store.dsn:
        raise click.UsageError("PG_DSN is not set; export it or add store.dsn to the config file")
    try:
        return create_store(config, persistent=True)
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Pipeline YAML config")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """Marketplace listing ingestion CLI."""
    _configure_logging(verbose)
    ctx.obj = load_config(config_path)


@cli.command("init-db")
@click.pass_obj
def init_db(config: PipelineConfig) -> None:
    """Create the listings table and indexes."""
    _open_store(config)
    click.echo("✅ catalog_listings table is ready")


@cli.command()
@click.option("--platform", type=PLATFORM_CHOICE, help="Only refresh one platform")
@click.option("--batch-size", type=int, help="Listings per batch")
@click.option("--max-batches", type=int, help="Stop after N batches (checkpoint is kept)")
@click.option("--resume/--fresh", default=True, help="Continue from the last checkpoint")
@click.option("--dry-run", is_flag=True, help="Only print what would be refreshed")
@click.pass_obj
def backfill(
    config: PipelineConfig,
    platform: Optional[str],
    batch_size: Optional[int],
    max_batches: Optional[int],
    resume: bool,
    dry_run: bool,
) -> None:
    """Refresh MISSING, BAD, PARTIAL and stale GOOD listings."""
    if batch_size:
        config.scheduler.batch_size = batch_size
    threshold = config.quality.good_attribute_threshold

    store = _open_store(config)
    click.echo(f"🚀 Backfill (platform={platform or 'all'}, batch={config.scheduler.batch_size})")
    try:
        if dry_run:
            scheduler = StalenessScheduler(
                store, None, config.scheduler, platform=platform, good_threshold=threshold
            )
            stats = scheduler.run(max_batches, resume=False, dry_run=True)
        else:
            with open_pipeline(config, store=store) as pipeline:
                scheduler = StalenessScheduler(
                    store, pipeline, config.scheduler, platform=platform, good_threshold=threshold
                )
                stats = scheduler.run(max_batches, resume=resume)
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(_dump(stats))
    if not stats.get("completed"):
        click.echo(f"⏸️  Checkpoint kept at {config.scheduler.checkpoint_path}")


@cli.command()
@click.argument("listing_id", type=int)
@click.pass_obj
def rescrape(config: PipelineConfig, listing_id: int) -> None:
    """Refresh one listing now and print its quality summary."""
    store = _open_store(config)
    try:
        with open_pipeline(config, store=store) as pipeline, CatalogService(pipeline) as service:
            result = service.rescrape(listing_id)
    except (RescrapeError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_dump(result.to_dict()))


@cli.command()
@click.pass_obj
def stats(config: PipelineConfig) -> None:
    """Show listing counts per platform and quality tier."""
    store = _open_store(config)
    try:
        counts = store.count_by_platform_and_tier(config.quality.good_attribute_threshold)
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo("\n📊 Listing Statistics\n" + "=" * 56)
    tiers = list(QualityTier)
    click.echo(f"{'platform':16s}" + "".join(f"{tier.value:>10s}" for tier in tiers))
    for platform in Platform:
        row = [counts.get((platform, tier), 0) for tier in tiers]
        click.echo(f"{platform.value:16s}" + "".join(f"{value:10d}" for value in row))
    click.echo(f"\nTotal listings: {sum(counts.values())}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="Hard-delete duplicate listings?")
@click.pass_obj
def dedupe(config: PipelineConfig) -> None:
    """Keep the best-scoring row per canonical URL."""
    store = _open_store(config)
    try:
        deleted = store.deduplicate()
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"✅ Removed {deleted} duplicate listing(s)")


@cli.command("cache-image")
@click.argument("url")
@click.option("--platform", type=PLATFORM_CHOICE, help="Apply platform blocklist and referer")
@click.pass_obj
def cache_image(config: PipelineConfig, url: str, platform: Optional[str]) -> None:
    """Download, verify and cache a single image URL."""
    cache = ContentAddressedCache(config.images.cache_dir, config.images.public_prefix)
    with ImageResolver(cache, config.images, referers=config.orchestrator.referers()) as resolver:
        try:
            entry = resolver.cache_url(url, Platform(platform) if platform else None)
        except ImageFetchError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(_dump(entry.to_dict()))


@cli.command()
@click.argument("platform", type=PLATFORM_CHOICE)
@click.argument("html_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--url", help="Page URL used to absolutize links")
@click.option("--summary", is_flag=True, help="Print summary fields instead of the detail payload")
def parse(platform: str, html_file: str, url: Optional[str], summary: bool) -> None:
    """Run a provider adapter over a saved HTML page."""
    adapter = get_adapter(Platform(platform))
    html = Path(html_file).read_bytes()
    record = adapter.extract_summary(html, url) if summary else adapter.extract_detail(html, url)
    click.echo(_dump(record.model_dump(mode="json")))


if __name__ == "__main__":
    cli()
