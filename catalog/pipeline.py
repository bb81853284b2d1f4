"""Run scrape tasks through fetch, parse, classify, image and store stages."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .config import PipelineConfig
from .errors import BreakerOpenError, ParseError, PipelineError, RescrapeError, StoreError
from .images import ContentAddressedCache, ImageResolver
from .models import (
    DetailPayload,
    ImageStatus,
    Listing,
    PartialListing,
    Platform,
    RawPage,
    ScrapeTask,
    TaskState,
    utcnow,
)
from .providers import get_adapter
from .providers.base import ProviderAdapter
from .quality import DEFAULT_GOOD_THRESHOLD, QualityTier, classify, summarize
from .scraper import Orchestrator
from .store import ListingStore, create_store

LOGGER = logging.getLogger(__name__)

RESCRAPE_PRIORITY = 100


@dataclass
class PipelineResult:
    """Outcome of one task; ``error`` is set when the task did not reach STORED."""

    task: ScrapeTask
    listing: Optional[Listing] = None
    tier: Optional[QualityTier] = None
    error: Optional[BaseException] = None

    @property
    def stored(self) -> bool:
        return self.task.state == TaskState.STORED


def _is_empty_detail(detail: DetailPayload) -> bool:
    return not (
        detail.attributes
        or detail.price_tiers
        or detail.gallery
        or detail.description
        or detail.supplier.name
    )


def _dedupe(urls: List[str]) -> List[str]:
    seen = set()
    result = []
    for url in urls:
        if url and url not in seen:
            seen.add(url)
            result.append(url)
    return result


class ListingPipeline:
    """Glue between orchestrator, adapters, image resolver and store.

    ``process`` blocks until the task reaches a terminal state and never
    raises for pipeline failures; they are reported on the result.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        store: ListingStore,
        resolver: ImageResolver,
        *,
        adapters: Callable[[Platform], ProviderAdapter] = get_adapter,
        good_threshold: int = DEFAULT_GOOD_THRESHOLD,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.resolver = resolver
        self.good_threshold = good_threshold
        self._adapters = adapters

    def process(self, task: ScrapeTask) -> PipelineResult:
        """Fetch, parse, classify, resolve the image and upsert one listing.

        Parameters
        ----------
        task : ScrapeTask
            Task in PENDING state

        Returns
        -------
        PipelineResult
            Stored listing, or the error that ended the task
        """
        try:
            page = self.orchestrator.submit(task.url, task.platform, task.priority, task=task).result()
        except PipelineError as exc:
            self._settle_failure(task, exc)
            LOGGER.warning("Fetch failed for %s (%s): %s", task.url, exc.kind, exc)
            return PipelineResult(task, error=exc)
        except Exception as exc:
            self._settle_failure(task, exc)
            LOGGER.error("Unexpected fetch error for %s: %s", task.url, exc, exc_info=True)
            return PipelineResult(task, error=exc)

        # A coalesced task can miss the FETCHING mark of the shared fetch.
        if task.state == TaskState.PENDING:
            task.advance(TaskState.FETCHING)

        try:
            existing = self.store.find_by_canonical_key(task.platform, task.url)
            if existing is None and task.listing_id is not None:
                existing = self.store.get(task.listing_id)
        except StoreError as exc:
            task.fail(exc.kind)
            LOGGER.warning("Store lookup failed for %s: %s", task.url, exc)
            return PipelineResult(task, error=exc)

        try:
            summary, detail = self._parse(task, page)
        except ParseError as exc:
            LOGGER.warning("%s", exc)
            summary, detail = PartialListing(), None
        task.advance(TaskState.PARSED)

        listing = self._build_listing(task, summary, detail, existing)
        tier = classify(listing.detail, self.good_threshold)
        task.advance(TaskState.CLASSIFIED)

        try:
            self._resolve_image(listing, summary, existing)
        except PipelineError as exc:
            LOGGER.warning("Image resolution failed for %s: %s", task.url, exc)
            if not listing.has_cached_image:
                listing.image = None
                listing.image_status = ImageStatus.UNRESOLVED
        task.advance(TaskState.IMAGE_RESOLVED)

        try:
            stored = self.store.upsert_listing(listing)
        except StoreError as exc:
            task.fail(exc.kind)
            LOGGER.warning("Store failed for %s: %s", task.url, exc)
            return PipelineResult(task, listing=listing, tier=tier, error=exc)

        task.listing_id = stored.id
        task.advance(TaskState.STORED)
        LOGGER.info(
            "Stored listing %s (%s, tier=%s, image=%s)",
            stored.id,
            task.platform.value,
            tier.value,
            stored.image_status.value,
        )
        return PipelineResult(task, listing=stored, tier=classify(stored.detail, self.good_threshold))

    def _settle_failure(self, task: ScrapeTask, exc: Exception) -> None:
        if task.state.is_terminal:
            return
        breaker_open = isinstance(exc, BreakerOpenError)
        task.last_error_kind = getattr(exc, "kind", "unexpected")
        if task.state == TaskState.PENDING and not breaker_open:
            task.advance(TaskState.FETCHING)
        target = TaskState.BREAKER_OPEN if breaker_open else TaskState.FAILED
        if task.can_advance(target):
            task.advance(target)

    def _parse(self, task: ScrapeTask, page: RawPage) -> Tuple[PartialListing, Optional[DetailPayload]]:
        adapter = self._adapters(task.platform)
        url = page.final_url or task.url
        summary = adapter.extract_summary(page.html, url)
        detail = adapter.extract_detail(page.html, url)
        if _is_empty_detail(detail):
            if not summary.title:
                raise ParseError(f"No usable data extracted from {task.url}")
            return summary, None
        return summary, detail

    def _build_listing(
        self,
        task: ScrapeTask,
        summary: PartialListing,
        detail: Optional[DetailPayload],
        existing: Optional[Listing],
    ) -> Listing:
        now = utcnow()
        base = existing.model_dump() if existing is not None else {}
        fields: Dict[str, Any] = {
            name: value
            for name, value in summary.model_dump().items()
            if name != "image_candidates" and value not in (None, "", [])
        }
        if detail is not None:
            if not fields.get("store_name") and detail.supplier.name:
                fields["store_name"] = detail.supplier.name
            if fields.get("moq") is None and detail.moq is not None:
                fields["moq"] = detail.moq
                fields["moq_raw"] = detail.moq_text
            if not fields.get("description") and detail.description:
                fields["description"] = detail.description
        base.update(fields)
        base.update(
            {
                "id": None,
                "platform": task.platform,
                "url": task.url,
                "updated_at": now,
                "created_at": existing.created_at if existing is not None else now,
            }
        )
        if detail is not None:
            # Detail is replaced wholesale, never merged.
            base["detail"] = detail
            base["detail_updated_at"] = now
        return Listing.model_validate(base)

    def _resolve_image(self, listing: Listing, summary: PartialListing, existing: Optional[Listing]) -> None:
        gallery = _dedupe(list(listing.gallery) + list(summary.image_candidates))
        if existing is not None and existing.has_cached_image:
            listing.image = existing.image
            listing.image_status = ImageStatus.CACHED
            return
        if (
            existing is not None
            and existing.image_status == ImageStatus.UNRESOLVED
            and existing.gallery == listing.gallery
        ):
            listing.image_status = ImageStatus.UNRESOLVED
            return

        resolution = self.resolver.resolve(gallery, listing.platform)
        if resolution.resolved:
            listing.image = resolution.image
            listing.image_status = ImageStatus.CACHED
        elif listing.image_status != ImageStatus.PLACEHOLDER or not listing.image:
            listing.image = None
            listing.image_status = ImageStatus.UNRESOLVED


@contextmanager
def open_pipeline(
    config: PipelineConfig,
    store: Optional[ListingStore] = None,
    orchestrator: Optional[Orchestrator] = None,
) -> Iterator[ListingPipeline]:
    """Build a pipeline from configuration and tear down its workers on exit."""
    store = store if store is not None else create_store(config)
    orchestrator = orchestrator or Orchestrator(
        config.orchestrator, tracking_params=config.store.tracking_params
    )
    cache = ContentAddressedCache(config.images.cache_dir, config.images.public_prefix)
    resolver = ImageResolver(cache, config.images, referers=config.orchestrator.referers())
    try:
        yield ListingPipeline(
            orchestrator,
            store,
            resolver,
            good_threshold=config.quality.good_attribute_threshold,
        )
    finally:
        orchestrator.shutdown(wait=True)
        resolver.close()


@dataclass(frozen=True)
class RescrapeResult:
    listing_id: int
    attribute_count: int
    price_tier_count: int
    quality_tier: QualityTier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "attribute_count": self.attribute_count,
            "price_tier_count": self.price_tier_count,
            "quality_tier": self.quality_tier.value,
        }


class CatalogService:
    """On-demand rescrape boundary for storefront consumers.

    Concurrent rescrapes of one listing share a single pipeline run and
    receive the same result object.
    """

    def __init__(self, pipeline: ListingPipeline, *, max_workers: int = 4) -> None:
        self.pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rescrape")
        self._lock = threading.Lock()
        self._inflight: Dict[int, Future] = {}

    def rescrape_async(self, listing_id: int) -> Future:
        with self._lock:
            future = self._inflight.get(listing_id)
            if future is not None:
                LOGGER.debug("Joining in-flight rescrape of listing %d", listing_id)
                return future
            future = self._executor.submit(self._rescrape, listing_id)
            self._inflight[listing_id] = future
        future.add_done_callback(lambda done: self._forget(listing_id, done))
        return future

    def rescrape(self, listing_id: int, timeout: Optional[float] = None) -> RescrapeResult:
        """Refresh one listing and return its quality summary.

        Raises
        ------
        RescrapeError
            If the listing is unknown or could not be fetched and stored
        """
        return self.rescrape_async(listing_id).result(timeout=timeout)

    def _forget(self, listing_id: int, future: Future) -> None:
        with self._lock:
            if self._inflight.get(listing_id) is future:
                del self._inflight[listing_id]

    def _rescrape(self, listing_id: int) -> RescrapeResult:
        listing = self.pipeline.store.get(listing_id)
        if listing is None:
            raise RescrapeError(listing_id, "unknown listing")

        task = ScrapeTask(
            url=listing.url,
            platform=listing.platform,
            priority=RESCRAPE_PRIORITY,
            listing_id=listing_id,
        )
        result = self.pipeline.process(task)
        if result.error is not None:
            raise RescrapeError(listing_id, str(result.error)) from result.error

        summary = summarize(result.listing.detail, self.pipeline.good_threshold)
        return RescrapeResult(
            listing_id=result.listing.id or listing_id,
            attribute_count=summary.attribute_count,
            price_tier_count=summary.price_tier_count,
            quality_tier=summary.quality_tier,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "CatalogService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
