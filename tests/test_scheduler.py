import logging
import threading
from datetime import timedelta

import pytest

from catalog.config import SchedulerConfig
from catalog.errors import StoreError
from catalog.models import DetailPayload, ImageStatus, Platform, TaskState, utcnow
from catalog.pipeline import ListingPipeline, PipelineResult
from catalog.quality import QualityTier
from catalog.scheduler import Checkpoint, StalenessScheduler
from catalog.store import InMemoryListingStore

BASE_URL = "https://www.alibaba.com/product-detail/item_{}.html"


def _detail(attribute_count: int) -> DetailPayload:
    return DetailPayload(attributes=[(f"Label {i}", f"Value {i}") for i in range(attribute_count)])


class StubPipeline:
    """Marks each listing GOOD, like a successful detail scrape would."""

    def __init__(self, store, fail_ids=()):
        self.store = store
        self.fail_ids = set(fail_ids)
        self.processed = []
        self._lock = threading.Lock()

    def process(self, task):
        with self._lock:
            self.processed.append(task.listing_id)
        for state in (TaskState.FETCHING, TaskState.PARSED, TaskState.CLASSIFIED, TaskState.IMAGE_RESOLVED):
            task.advance(state)
        if task.listing_id in self.fail_ids:
            task.fail(StoreError.kind)
            return PipelineResult(task, error=StoreError("disk full"))
        listing = self.store.get(task.listing_id)
        listing.detail = _detail(12)
        listing.detail_updated_at = utcnow()
        listing.updated_at = utcnow()
        stored = self.store.upsert_listing(listing)
        task.advance(TaskState.STORED)
        return PipelineResult(task, listing=stored, tier=QualityTier.GOOD)


@pytest.fixture
def store(make_listing):
    now = utcnow()
    return InMemoryListingStore(
        [
            make_listing(id=1, url=BASE_URL.format(1), detail=_detail(12), detail_updated_at=now - timedelta(days=1)),
            make_listing(id=2, url=BASE_URL.format(2), detail=_detail(3), detail_updated_at=now - timedelta(days=2)),
            make_listing(id=3, url=BASE_URL.format(3), detail=_detail(0), detail_updated_at=now - timedelta(days=2)),
            make_listing(id=4, url=BASE_URL.format(4)),
            make_listing(id=5, url=BASE_URL.format(5), detail=_detail(11), detail_updated_at=now - timedelta(days=40)),
        ]
    )


@pytest.fixture
def scheduler_config(tmp_path):
    return SchedulerConfig(batch_size=2, max_parallel=2, checkpoint_path=tmp_path / "state" / "checkpoint.json")


def test_plan_orders_tiers_and_skips_fresh_good(store):
    scheduler = StalenessScheduler(store, config=SchedulerConfig(batch_size=10))

    batch = scheduler.plan_batch(Checkpoint.new())

    assert [task.listing_id for task in batch.tasks] == [4, 3, 2, 5]
    assert [task.priority for task in batch.tasks] == [30, 20, 10, 0]
    assert batch.cursors == {"MISSING": 4, "BAD": 3, "PARTIAL": 2, "GOOD": 5}


def test_plan_respects_batch_size_and_cursors(store, scheduler_config):
    scheduler = StalenessScheduler(store, config=scheduler_config)
    checkpoint = Checkpoint.new()

    first = scheduler.plan_batch(checkpoint)
    checkpoint.cursors.update(first.cursors)
    second = scheduler.plan_batch(checkpoint)

    assert [task.listing_id for task in first.tasks] == [4, 3]
    assert [task.listing_id for task in second.tasks] == [2, 5]


def test_interrupted_backfill_resumes_without_duplicates(store, scheduler_config, make_listing):
    pipeline = StubPipeline(store)
    first_run = StalenessScheduler(store, pipeline, scheduler_config).run(max_batches=1)

    assert first_run["completed"] is False
    assert sorted(pipeline.processed) == [3, 4]
    saved = Checkpoint.load(scheduler_config.checkpoint_path)
    assert saved.cursors == {"MISSING": 4, "BAD": 3}
    assert saved.run_id == first_run["run_id"]

    late = store.upsert_listing(make_listing(url=BASE_URL.format(6)))

    second_run = StalenessScheduler(store, pipeline, scheduler_config).run()

    assert second_run["completed"] is True
    assert second_run["run_id"] == first_run["run_id"]
    assert sorted(pipeline.processed) == [2, 3, 4, 5, late.id]
    assert len(pipeline.processed) == len(set(pipeline.processed))
    assert second_run["processed"] == 5
    assert second_run["stored"] == 5
    assert not scheduler_config.checkpoint_path.exists()


def test_fresh_run_ignores_checkpoint(store, scheduler_config):
    done = Checkpoint.new()
    done.cursors = {tier.value: 100 for tier in QualityTier}
    done.save(scheduler_config.checkpoint_path)
    pipeline = StubPipeline(store)

    result = StalenessScheduler(store, pipeline, scheduler_config).run(resume=False)

    assert result["run_id"] != done.run_id
    assert sorted(pipeline.processed) == [2, 3, 4, 5]


def test_resume_with_exhausted_cursors_completes_immediately(store, scheduler_config):
    done = Checkpoint.new()
    done.cursors = {tier.value: 100 for tier in QualityTier}
    done.save(scheduler_config.checkpoint_path)
    pipeline = StubPipeline(store)

    result = StalenessScheduler(store, pipeline, scheduler_config).run()

    assert result["completed"] is True
    assert pipeline.processed == []


def test_dry_run_plans_without_processing(store, scheduler_config, caplog):
    scheduler = StalenessScheduler(store, config=scheduler_config)
    with caplog.at_level(logging.INFO, logger="catalog.scheduler"):
        result = scheduler.run(dry_run=True)

    assert result["completed"] is True
    assert result["planned"] == 4
    assert result["batches"] == 2
    assert not scheduler_config.checkpoint_path.exists()
    assert sum("[dry-run]" in record.getMessage() for record in caplog.records) == 4
    with pytest.raises(RuntimeError):
        scheduler.run()


def test_store_errors_are_logged_and_not_retried(store, scheduler_config, caplog):
    pipeline = StubPipeline(store, fail_ids=[3])
    with caplog.at_level(logging.ERROR, logger="catalog.scheduler"):
        result = StalenessScheduler(store, pipeline, scheduler_config).run()

    assert result["completed"] is True
    assert result["failed"] == 1
    assert result["store_errors"] == 1
    assert pipeline.processed.count(3) == 1
    assert any("Store error for listing 3" in record.getMessage() for record in caplog.records)


def test_platform_filter(store, make_listing):
    store.upsert_listing(make_listing(url="https://www.indiamart.com/proddetail/pump-9.html", platform=Platform.INDIAMART))
    scheduler = StalenessScheduler(store, config=SchedulerConfig(batch_size=10), platform=Platform.INDIAMART)
    batch = scheduler.plan_batch(Checkpoint.new())
    assert [task.platform for task in batch.tasks] == [Platform.INDIAMART]


def test_checkpoint_survives_reload(tmp_path):
    path = tmp_path / "checkpoint.json"
    checkpoint = Checkpoint.new()
    checkpoint.cursors["BAD"] = 42
    checkpoint.bump("processed", 3)
    checkpoint.save(path)

    loaded = Checkpoint.load(path)

    assert loaded.to_dict() == checkpoint.to_dict()
    assert loaded.cursor(QualityTier.BAD) == 42
    assert loaded.cursor(QualityTier.GOOD) == 0


def test_unreadable_checkpoint_is_ignored(tmp_path):
    path = tmp_path / "checkpoint.json"
    assert Checkpoint.load(path) is None
    path.write_bytes(b"{not json")
    assert Checkpoint.load(path) is None
    path.write_bytes(b'{"cursors": {}}')
    assert Checkpoint.load(path) is None


def test_backfill_survives_malformed_image_urls(
    store, scheduler_config, orchestrator_factory, resolver, fake_fetcher_cls, alibaba_html
):
    html = alibaba_html.replace(
        "https://s.alicdn.com/@sc04/kf/H1234567890abcdef_960x960.jpg", "https://[broken/kf/H1_960x960.jpg"
    )
    pipeline = ListingPipeline(orchestrator_factory(fake_fetcher_cls(default_html=html)), store, resolver)

    stats = StalenessScheduler(store, pipeline, scheduler_config).run()

    assert stats["completed"] is True
    assert stats["processed"] == stats["stored"] == 4
    refreshed = store.get(4)
    assert refreshed.title == "Silicone Kitchen Spatula"
    assert refreshed.image_status == ImageStatus.UNRESOLVED
