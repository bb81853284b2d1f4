import threading
from datetime import datetime, timezone

import pytest

from catalog.errors import BlockedError, ImageFetchError, NetworkError, RescrapeError, StoreError
from catalog.models import DetailPayload, ImageStatus, Platform, ScrapeTask, TaskState
from catalog.pipeline import CatalogService, ListingPipeline
from catalog.quality import QualityTier
from catalog.store import InMemoryListingStore

URL = "https://www.alibaba.com/product-detail/silicone-spatula_1600123.html"
IMAGE_URL = "https://s.alicdn.com/@sc04/kf/H1234567890abcdef_960x960.jpg"
BROKEN_IMAGE_URL = "https://[broken/kf/H1234567890abcdef_960x960.jpg"
LONG_AGO = datetime(2023, 1, 1, tzinfo=timezone.utc)


class FailingStore(InMemoryListingStore):
    def upsert_listing(self, listing):
        raise StoreError("connection reset by peer")


@pytest.fixture
def build_pipeline(orchestrator_factory, resolver):
    def factory(fetcher, store=None, **orchestrator_kwargs):
        store = store if store is not None else InMemoryListingStore()
        return ListingPipeline(orchestrator_factory(fetcher, **orchestrator_kwargs), store, resolver)

    return factory


def _task(url: str = URL, **kwargs) -> ScrapeTask:
    return ScrapeTask(url=url, platform=Platform.ALIBABA, **kwargs)


def test_process_stores_parsed_listing(build_pipeline, fake_fetcher_cls, alibaba_html, image_server, make_image):
    image_server.add(IMAGE_URL, make_image(480, 480))
    pipeline = build_pipeline(fake_fetcher_cls(default_html=alibaba_html))

    result = pipeline.process(_task())

    assert result.stored
    assert result.error is None
    assert result.tier == QualityTier.PARTIAL
    assert result.task.history == [
        TaskState.PENDING,
        TaskState.FETCHING,
        TaskState.PARSED,
        TaskState.CLASSIFIED,
        TaskState.IMAGE_RESOLVED,
    ]
    listing = result.listing
    assert listing.id == result.task.listing_id == 1
    assert listing.title == "Silicone Kitchen Spatula"
    assert listing.store_name == "Acme Housewares Co., Ltd."
    assert (listing.price_min, listing.price_max, listing.currency) == (1.2, 3.5, "USD")
    assert listing.moq == 2
    assert listing.image_status == ImageStatus.CACHED
    assert listing.image.startswith("/cache/")
    assert len(listing.detail.attributes) == 3
    assert listing.detail_updated_at is not None
    assert image_server.requested == [IMAGE_URL]


def test_unresolvable_gallery_marks_image_unresolved(build_pipeline, fake_fetcher_cls, alibaba_html):
    pipeline = build_pipeline(fake_fetcher_cls(default_html=alibaba_html))
    result = pipeline.process(_task())
    assert result.stored
    assert result.listing.image is None
    assert result.listing.image_status == ImageStatus.UNRESOLVED


def test_existing_cached_image_is_kept(build_pipeline, fake_fetcher_cls, alibaba_html, image_server, make_listing):
    store = InMemoryListingStore(
        [make_listing(id=7, url=URL, image="/cache/old.jpg", image_status=ImageStatus.CACHED, updated_at=LONG_AGO)]
    )
    pipeline = build_pipeline(fake_fetcher_cls(default_html=alibaba_html), store=store)

    result = pipeline.process(_task(URL + "?spm=a2700.details"))

    assert result.listing.id == 7
    assert result.listing.image == "/cache/old.jpg"
    assert result.listing.title == "Silicone Kitchen Spatula"
    assert image_server.requested == []
    assert len(store) == 1


def test_empty_page_keeps_existing_detail(build_pipeline, fake_fetcher_cls, make_listing):
    good_detail = DetailPayload(attributes=[(f"Label {i}", f"Value {i}") for i in range(12)])
    store = InMemoryListingStore(
        [make_listing(id=3, url=URL, title="Old title", detail=good_detail, detail_updated_at=LONG_AGO, updated_at=LONG_AGO)]
    )
    pipeline = build_pipeline(fake_fetcher_cls(default_html="<html><body></body></html>"), store=store)

    result = pipeline.process(_task())

    assert result.stored
    assert result.tier == QualityTier.GOOD
    assert result.listing.title == "Old title"
    assert result.listing.detail_updated_at == LONG_AGO
    assert len(store.get(3).detail.attributes) == 12


def test_new_detail_replaces_old_wholesale(build_pipeline, fake_fetcher_cls, alibaba_html, make_listing):
    old_detail = DetailPayload(attributes=[(f"Old {i}", "x") for i in range(12)], gallery=["https://cdn.example.com/a.jpg"])
    store = InMemoryListingStore([make_listing(id=3, url=URL, detail=old_detail, updated_at=LONG_AGO)])
    pipeline = build_pipeline(fake_fetcher_cls(default_html=alibaba_html), store=store)

    result = pipeline.process(_task())

    assert result.tier == QualityTier.PARTIAL
    assert [label for label, _ in store.get(3).detail.attributes] == ["Material", "Color", "Brand Name"]


def test_store_failure_fails_task(build_pipeline, fake_fetcher_cls, alibaba_html):
    pipeline = build_pipeline(fake_fetcher_cls(default_html=alibaba_html), store=FailingStore())

    result = pipeline.process(_task())

    assert not result.stored
    assert isinstance(result.error, StoreError)
    assert result.task.state == TaskState.FAILED
    assert result.task.last_error_kind == "store"
    assert result.listing is not None


def test_fetch_failure_fails_task(build_pipeline, fake_fetcher_cls):
    pipeline = build_pipeline(fake_fetcher_cls(always=NetworkError("HTTP 404", retryable=False)))
    result = pipeline.process(_task())
    assert result.task.state == TaskState.FAILED
    assert result.task.last_error_kind == "network"
    assert len(pipeline.store) == 0


def test_open_breaker_short_circuits_task(build_pipeline, fake_fetcher_cls, clock):
    fetcher = fake_fetcher_cls(always=BlockedError("status_403"))
    pipeline = build_pipeline(fetcher, clock=clock)
    for idx in range(2):
        blocked = pipeline.process(_task(f"https://www.alibaba.com/product-detail/item_{idx}.html"))
        assert blocked.task.last_error_kind == "blocked"
        assert blocked.task.state == TaskState.FAILED

    result = pipeline.process(_task())

    assert result.task.state == TaskState.BREAKER_OPEN
    assert result.task.last_error_kind == "breaker_open"
    assert len(fetcher.calls) == 2


def test_concurrent_rescrapes_share_one_fetch(build_pipeline, fake_fetcher_cls, alibaba_html, make_listing):
    gate = threading.Event()
    fetcher = fake_fetcher_cls(default_html=alibaba_html, gate=gate)
    store = InMemoryListingStore([make_listing(id=1, url=URL)])
    pipeline = build_pipeline(fetcher, store=store)
    futures = []

    with CatalogService(pipeline) as service:
        threads = [threading.Thread(target=lambda: futures.append(service.rescrape_async(1))) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        assert fetcher.started.wait(5)
        gate.set()
        results = [future.result(timeout=5) for future in futures]

    assert len(futures) == 5
    assert len(fetcher.calls) == 1
    assert all(result is results[0] for result in results)
    assert results[0].to_dict() == {
        "listing_id": 1,
        "attribute_count": 3,
        "price_tier_count": 2,
        "quality_tier": "PARTIAL",
    }
    assert len(store) == 1


def test_rescrape_unknown_listing(build_pipeline, fake_fetcher_cls):
    fetcher = fake_fetcher_cls()
    with CatalogService(build_pipeline(fetcher)) as service:
        with pytest.raises(RescrapeError) as excinfo:
            service.rescrape(404, timeout=5)
    assert excinfo.value.reason == "unknown listing"
    assert fetcher.calls == []


def test_rescrape_reports_unreachable_target(build_pipeline, fake_fetcher_cls, make_listing):
    store = InMemoryListingStore([make_listing(id=1, url=URL)])
    pipeline = build_pipeline(fake_fetcher_cls(always=NetworkError("down", retryable=False)), store=store)
    with CatalogService(pipeline) as service:
        with pytest.raises(RescrapeError) as excinfo:
            service.rescrape(1, timeout=5)
    assert isinstance(excinfo.value.__cause__, NetworkError)


def test_malformed_image_url_does_not_fail_task(build_pipeline, fake_fetcher_cls, alibaba_html, image_server):
    html = alibaba_html.replace(IMAGE_URL, BROKEN_IMAGE_URL)
    pipeline = build_pipeline(fake_fetcher_cls(default_html=html))

    result = pipeline.process(_task())

    assert result.stored
    assert result.error is None
    assert result.listing.image is None
    assert result.listing.image_status == ImageStatus.UNRESOLVED
    assert image_server.requested == []


def test_image_stage_error_still_stores_listing(build_pipeline, fake_fetcher_cls, alibaba_html, resolver, monkeypatch):
    def explode(gallery, platform=None):
        raise ImageFetchError(IMAGE_URL, "cache write failed: disk full")

    monkeypatch.setattr(resolver, "resolve", explode)
    pipeline = build_pipeline(fake_fetcher_cls(default_html=alibaba_html))

    result = pipeline.process(_task())

    assert result.stored
    assert result.listing.image_status == ImageStatus.UNRESOLVED
