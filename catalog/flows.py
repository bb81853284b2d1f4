"""Prefect flow wiring for scheduled catalog refreshes."""
from __future__ import annotations

from typing import Any, Dict, Optional

import orjson
from prefect import flow, get_run_logger, task

from .config import load_config
from .pipeline import open_pipeline
from .scheduler import StalenessScheduler
from .store import create_store


@task(retries=2, retry_delay_seconds=120)
def backfill_task(
    config_path: Optional[str] = None,
    platform: Optional[str] = None,
    max_batches: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one resumable backfill pass; a retry continues from the checkpoint."""
    logger = get_run_logger()
    config = load_config(config_path)
    store = create_store(config, persistent=True)
    with open_pipeline(config, store=store) as pipeline:
        scheduler = StalenessScheduler(
            store,
            pipeline,
            config.scheduler,
            platform=platform,
            good_threshold=config.quality.good_attribute_threshold,
        )
        stats = scheduler.run(max_batches, resume=True)
    logger.info("backfill_task platform=%s stats=%s", platform or "all", stats)
    return stats


@task
def tier_counts_task(config_path: Optional[str] = None) -> Dict[str, int]:
    """Listing counts per ``platform/tier`` after the refresh."""
    config = load_config(config_path)
    store = create_store(config, persistent=True)
    counts = store.count_by_platform_and_tier(config.quality.good_attribute_threshold)
    return {f"{platform.value}/{tier.value}": total for (platform, tier), total in counts.items()}


@flow(name="catalog-refresh")
def refresh_flow(
    config_path: Optional[str] = None,
    platform: Optional[str] = None,
    max_batches: Optional[int] = None,
) -> Dict[str, Any]:
    """Backfill stale listings, then report tier counts."""
    stats = backfill_task(config_path, platform, max_batches)
    counts = tier_counts_task(config_path)

    summary = {"backfill": stats, "tiers": counts}
    get_run_logger().info("refresh_flow summary=%s", orjson.dumps(summary).decode("utf-8"))
    return summary
