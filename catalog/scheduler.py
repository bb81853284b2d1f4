"""Staleness-driven backfill scheduler with resumable checkpoints."""
from __future__ import annotations

import logging
import os
import tempfile
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import orjson

from .config import SchedulerConfig
from .errors import StoreError
from .models import Platform, ScrapeTask, TaskState, utcnow
from .pipeline import ListingPipeline, PipelineResult
from .quality import DEFAULT_GOOD_THRESHOLD, QualityTier
from .store import CandidateQuery, ListingStore

LOGGER = logging.getLogger(__name__)

# Refresh order; GOOD rows are only picked once stale.
TIER_ORDER = (QualityTier.MISSING, QualityTier.BAD, QualityTier.PARTIAL, QualityTier.GOOD)

TIER_PRIORITY: Dict[QualityTier, int] = {
    QualityTier.MISSING: 30,
    QualityTier.BAD: 20,
    QualityTier.PARTIAL: 10,
    QualityTier.GOOD: 0,
}


@dataclass
class Checkpoint:
    """Backfill progress: last processed id per tier plus running counters."""

    run_id: str
    started_at: datetime
    cursors: Dict[str, int] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def new(cls, started_at: Optional[datetime] = None) -> "Checkpoint":
        return cls(run_id=uuid.uuid4().hex[:12], started_at=started_at or utcnow())

    @classmethod
    def load(cls, path: Union[str, Path]) -> Optional["Checkpoint"]:
        path = Path(path)
        if not path.exists():
            return None
        try:
            data = orjson.loads(path.read_bytes())
            return cls(
                run_id=data["run_id"],
                started_at=datetime.fromisoformat(data["started_at"]),
                cursors={k: int(v) for k, v in data.get("cursors", {}).items()},
                stats={k: int(v) for k, v in data.get("stats", {}).items()},
            )
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable checkpoint %s: %s", path, exc)
            return None

    def save(self, path: Union[str, Path]) -> None:
        """Write atomically (temp file + rename)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".checkpoint-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2))
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def cursor(self, tier: QualityTier) -> int:
        return self.cursors.get(tier.value, 0)

    def bump(self, name: str, amount: int = 1) -> None:
        self.stats[name] = self.stats.get(name, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "cursors": dict(self.cursors),
            "stats": dict(self.stats),
        }


@dataclass
class Batch:
    """Tasks for one scheduling round and the cursors they advance to."""

    tasks: List[ScrapeTask]
    cursors: Dict[str, int]

    def __len__(self) -> int:
        return len(self.tasks)


class StalenessScheduler:
    """Select listings needing a refresh and drive them through the pipeline.

    Candidates are MISSING, BAD, PARTIAL, then GOOD rows whose detail is older
    than the staleness window; ids ascend within a tier. Progress is
    checkpointed after every batch so an interrupted backfill resumes after
    each tier's cursor, skipping rows refreshed since the run started while
    still picking up rows inserted later.
    """

    def __init__(
        self,
        store: ListingStore,
        pipeline: Optional[ListingPipeline] = None,
        config: Optional[SchedulerConfig] = None,
        *,
        platform: Optional[Platform] = None,
        good_threshold: int = DEFAULT_GOOD_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize scheduler.

        Parameters
        ----------
        store : ListingStore
            Source of refresh candidates
        pipeline : ListingPipeline, optional
            Processes tasks; may be omitted for planning-only (dry) runs
        config : SchedulerConfig, optional
            Batch size, parallelism, staleness window and checkpoint path
        platform : Platform, optional
            Restrict the run to one platform
        good_threshold : int
            Attribute count separating PARTIAL from GOOD
        clock : callable
            Current time source
        """
        self.store = store
        self.pipeline = pipeline
        self.config = config or SchedulerConfig()
        self.platform = Platform(platform) if platform else None
        self.good_threshold = good_threshold
        self._clock = clock

    @property
    def checkpoint_path(self) -> Path:
        return Path(self.config.checkpoint_path)

    def plan_batch(self, checkpoint: Checkpoint) -> Batch:
        """Fill one batch in tier order, continuing after each tier's cursor."""
        stale_before = checkpoint.started_at - timedelta(days=self.config.staleness_days)
        tasks: List[ScrapeTask] = []
        cursors: Dict[str, int] = {}
        remaining = max(1, self.config.batch_size)

        for tier in TIER_ORDER:
            if remaining <= 0:
                break
            query = CandidateQuery(
                tier=tier,
                after_id=checkpoint.cursor(tier),
                limit=remaining,
                platform=self.platform,
                stale_before=stale_before,
                refreshed_since=checkpoint.started_at,
                good_threshold=self.good_threshold,
            )
            rows = self.store.refresh_candidates(query)
            for row in rows:
                tasks.append(
                    ScrapeTask(
                        url=row.url,
                        platform=row.platform,
                        priority=TIER_PRIORITY[tier],
                        listing_id=row.id,
                    )
                )
            if rows:
                cursors[tier.value] = rows[-1].id
                LOGGER.debug("Planned %d %s listing(s) after id %d", len(rows), tier.value, query.after_id)
            remaining -= len(rows)

        return Batch(tasks=tasks, cursors=cursors)

    def run_batch(self, batch: Batch, checkpoint: Checkpoint) -> List[PipelineResult]:
        """Process one batch with at most ``max_parallel`` tasks in flight."""
        if self.pipeline is None:
            raise RuntimeError("Scheduler has no pipeline; only planning is available")
        workers = max(1, min(self.config.max_parallel, len(batch.tasks)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="backfill") as executor:
            results = list(executor.map(self.pipeline.process, batch.tasks))

        store_errors = 0
        for result in results:
            checkpoint.bump("processed")
            state = result.task.state
            if state == TaskState.STORED:
                checkpoint.bump("stored")
            elif state == TaskState.BREAKER_OPEN:
                checkpoint.bump("breaker_open")
            else:
                checkpoint.bump("failed")
            if isinstance(result.error, StoreError):
                store_errors += 1
                LOGGER.error("Store error for listing %s (%s): %s", result.task.listing_id, result.task.url, result.error)
        if store_errors:
            checkpoint.bump("store_errors", store_errors)
        return results

    def run(
        self,
        max_batches: Optional[int] = None,
        *,
        resume: bool = True,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Run batches until no candidates remain or ``max_batches`` is reached.

        Parameters
        ----------
        max_batches : int, optional
            Stop after this many batches, leaving the checkpoint for a resume
        resume : bool
            Continue from an existing checkpoint instead of starting fresh
        dry_run : bool
            Plan and log batches without fetching or writing a checkpoint

        Returns
        -------
        dict
            Run id, completion flag and counters
        """
        checkpoint = Checkpoint.load(self.checkpoint_path) if resume and not dry_run else None
        if checkpoint is not None:
            LOGGER.info(
                "Resuming backfill %s started at %s (cursors=%s)",
                checkpoint.run_id,
                checkpoint.started_at.isoformat(),
                checkpoint.cursors,
            )
        else:
            checkpoint = Checkpoint.new(self._clock())
            LOGGER.info("Starting backfill %s", checkpoint.run_id)

        batches = 0
        completed = False
        while max_batches is None or batches < max_batches:
            try:
                batch = self.plan_batch(checkpoint)
            except StoreError as exc:
                LOGGER.error("Cannot load refresh candidates: %s", exc)
                break
            if not batch.tasks:
                completed = True
                break

            batches += 1
            if dry_run:
                for task in batch.tasks:
                    LOGGER.info("[dry-run] %s %s (priority %d)", task.platform.value, task.url, task.priority)
                checkpoint.bump("planned", len(batch))
            else:
                self.run_batch(batch, checkpoint)
            checkpoint.cursors.update(batch.cursors)
            checkpoint.bump("batches")
            if not dry_run:
                checkpoint.save(self.checkpoint_path)
            LOGGER.info("Batch %d done: %s", batches, checkpoint.stats)

        if completed and not dry_run and self.checkpoint_path.exists():
            self.checkpoint_path.unlink()
            LOGGER.info("Backfill %s complete, checkpoint removed", checkpoint.run_id)

        return {"run_id": checkpoint.run_id, "completed": completed, **checkpoint.stats}
