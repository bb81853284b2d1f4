"""Concurrency-bounded fetch dispatch with coalescing, retry and circuit breaking."""
from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from ..antibot import (
    CircuitBreaker,
    CircuitBreakerConfig,
    EscalationMatrix,
    PlatformRateLimiter,
    TokenBucket,
    UserAgentPool,
)
from ..config import OrchestratorConfig
from ..errors import BlockedError, BreakerOpenError, NetworkError
from ..models import Platform, RawPage, ScrapeTask, TaskState
from ..providers import get_adapter
from ..providers.base import ProviderAdapter
from ..store.canonical import canonical_key
from .fetcher import BrowserFetcher, HttpFetcher, PageFetcher

LOGGER = logging.getLogger(__name__)

BreakerOpenListener = Callable[[Platform, int, float], None]


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError) and exc.retryable


@dataclass(order=True)
class _WorkItem:
    sort_key: Tuple[float, int]
    key: str = field(compare=False)
    url: str = field(compare=False)
    platform: Optional[Platform] = field(compare=False)
    future: Optional[Future] = field(compare=False)


@dataclass
class _InFlight:
    future: Future
    tasks: List[ScrapeTask] = field(default_factory=list)


class Orchestrator:
    """Explicitly constructed fetch orchestrator.

    Owns its worker pool, per-platform rate limiters and circuit breakers, the
    strategy escalation ladder and the in-flight map. Several instances can
    coexist (e.g. in tests) without sharing state.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        *,
        http_fetcher: Optional[PageFetcher] = None,
        renderer: Optional[PageFetcher] = None,
        adapters: Callable[[Platform], ProviderAdapter] = get_adapter,
        tracking_params: Optional[List[str]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_breaker_open: Optional[BreakerOpenListener] = None,
    ) -> None:
        """Initialize orchestrator.

        Parameters
        ----------
        config : OrchestratorConfig, optional
            Concurrency, retry, breaker and per-platform limits
        http_fetcher : PageFetcher, optional
            Plain fetch strategy (defaults to :class:`HttpFetcher`)
        renderer : PageFetcher, optional
            Rendered fetch strategy; defaults to :class:`BrowserFetcher` when
            rendering is enabled in config
        adapters : callable
            Platform → adapter lookup used for the sufficiency check
        tracking_params : list of str, optional
            Query parameters ignored when coalescing URLs
        clock, sleep : callable
            Time sources, injectable for tests
        on_breaker_open : callable, optional
            Listener called as ``(platform, failures, cooldown)`` when a breaker opens
        """
        self.config = config or OrchestratorConfig()
        referers = self.config.referers()
        user_agents = UserAgentPool()
        self._owns_http = http_fetcher is None
        self.http_fetcher = http_fetcher or HttpFetcher(
            timeout=self.config.fetch_timeout, referers=referers, user_agents=user_agents
        )
        if renderer is None and self.config.enable_rendering:
            renderer = BrowserFetcher(
                timeout=self.config.render_timeout, referers=referers, user_agents=user_agents
            )
        self.renderer = renderer if self.config.enable_rendering else None
        self._adapters = adapters
        self._tracking_params = tracking_params
        self._sleep = sleep

        self._listeners: List[BreakerOpenListener] = []
        if on_breaker_open is not None:
            self._listeners.append(on_breaker_open)

        breaker_cfg = CircuitBreakerConfig(
            failure_threshold=self.config.breaker.failure_threshold,
            cooldown=self.config.breaker.cooldown,
            cooldown_multiplier=self.config.breaker.cooldown_multiplier,
            max_cooldown=self.config.breaker.max_cooldown,
        )
        self.breakers: Dict[Platform, CircuitBreaker] = {
            platform: CircuitBreaker(
                platform.value, breaker_cfg, clock=clock, on_open=self._notify_breaker_open
            )
            for platform in Platform
        }
        self.escalation = EscalationMatrix()
        self.rate_limiter = PlatformRateLimiter(
            {
                platform.value: TokenBucket(
                    self.config.limits_for(platform).capacity,
                    self.config.limits_for(platform).refill_interval,
                )
                for platform in Platform
            },
            {platform.value: self.config.limits_for(platform).max_concurrent for platform in Platform},
            acquire_timeout=self.config.acquire_timeout,
        )

        self._queue: "queue.PriorityQueue[_WorkItem]" = queue.PriorityQueue()
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._inflight: Dict[str, _InFlight] = {}
        self._workers: List[threading.Thread] = []
        self._started = False
        self._closed = False
        self.stats: Dict[str, int] = {
            "submitted": 0,
            "coalesced": 0,
            "fetches": 0,
            "retries": 0,
            "blocked": 0,
            "breaker_rejections": 0,
            "rendered": 0,
            "succeeded": 0,
            "failed": 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_breaker_listener(self, listener: BreakerOpenListener) -> None:
        self._listeners.append(listener)

    def submit(
        self,
        url: str,
        platform: Platform,
        priority: int = 0,
        task: Optional[ScrapeTask] = None,
    ) -> Future:
        """Schedule a fetch and return a Future resolving to a :class:`RawPage`.

        Concurrent submissions of the same canonical URL share one Future and
        one network fetch. Higher ``priority`` is dispatched first.

        Raises
        ------
        RuntimeError
            If the orchestrator has been shut down
        """
        platform = Platform(platform)
        key = canonical_key(platform, url, self._tracking_params)
        with self._lock:
            if self._closed:
                raise RuntimeError("Orchestrator is shut down")
            self.stats["submitted"] += 1

            existing = self._inflight.get(key)
            if existing is not None:
                self.stats["coalesced"] += 1
                if task is not None:
                    existing.tasks.append(task)
                LOGGER.debug("Coalesced submission for %s", key)
                return existing.future

            breaker = self.breakers[platform]
            retry_after = breaker.retry_after()
            if retry_after > 0:
                self.stats["breaker_rejections"] += 1
                if task is not None and task.can_advance(TaskState.BREAKER_OPEN):
                    task.last_error_kind = BreakerOpenError.kind
                    task.advance(TaskState.BREAKER_OPEN)
                future: Future = Future()
                future.set_exception(BreakerOpenError(platform.value, retry_after))
                return future

            self._ensure_started()
            future = Future()
            self._inflight[key] = _InFlight(future, [task] if task is not None else [])
            self._queue.put(
                _WorkItem((-float(priority), next(self._seq)), key, url, platform, future)
            )
        return future

    def fetch(self, url: str, platform: Platform, priority: int = 0, timeout: Optional[float] = None) -> RawPage:
        """Blocking convenience wrapper around :meth:`submit`."""
        return self.submit(url, platform, priority).result(timeout=timeout)

    def breaker_state(self, platform: Platform) -> str:
        return self.breakers[Platform(platform)].state.value

    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """Stop the workers once queued work (or nothing, if cancelled) is done."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            workers = list(self._workers)

        if cancel_pending:
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item.future is not None and item.future.cancel():
                    with self._lock:
                        self._inflight.pop(item.key, None)
                self._queue.task_done()

        for _ in workers:
            self._queue.put(_WorkItem((float("inf"), next(self._seq)), "", "", None, None))
        if wait:
            for worker in workers:
                worker.join()
        if self._owns_http and isinstance(self.http_fetcher, HttpFetcher):
            self.http_fetcher.close()
        LOGGER.info("Orchestrator stopped: %s", self.stats)

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _ensure_started(self) -> None:
        if self._started:
            return
        self._started = True
        for idx in range(max(1, self.config.global_concurrency)):
            worker = threading.Thread(
                target=self._worker_loop, name=f"fetch-worker-{idx}", daemon=True
            )
            worker.start()
            self._workers.append(worker)
        LOGGER.debug("Started %d fetch workers", len(self._workers))

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item.future is None:
                    return
                self._process(item)
            except Exception as exc:
                LOGGER.error("Fetch worker error: %s", exc, exc_info=True)
            finally:
                self._queue.task_done()

    def _process(self, item: _WorkItem) -> None:
        if not item.future.set_running_or_notify_cancel():
            with self._lock:
                self._inflight.pop(item.key, None)
            return
        try:
            page = self._fetch_guarded(item)
        except Exception as exc:
            self._finish(item, exc=exc)
        else:
            self._finish(item, page=page)

    def _fetch_guarded(self, item: _WorkItem) -> RawPage:
        # The breaker counts blocked responses and frees the trial slot on other errors.
        try:
            return self.breakers[item.platform].call(self._fetch_with_retries, item)
        except BreakerOpenError:
            self._bump("breaker_rejections")
            raise
        except BlockedError as exc:
            self._bump("blocked")
            LOGGER.warning("Blocked on %s: %s", item.platform.value, exc.reason)
            if self.renderer is not None:
                self.escalation.escalate(item.platform.value)
            raise

    def _fetch_with_retries(self, item: _WorkItem) -> RawPage:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_exponential(
                multiplier=self.config.backoff_initial,
                max=self.config.backoff_max,
            )
            + wait_random(0, self.config.backoff_jitter),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda state: self._before_retry(item, state),
            sleep=self._sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self._mark(item, TaskState.FETCHING)
                return self._fetch_once(item)
        raise NetworkError(f"Retry budget exhausted for {item.url}")  # pragma: no cover

    def _before_retry(self, item: _WorkItem, state: RetryCallState) -> None:
        self._bump("retries")
        exc = state.outcome.exception() if state.outcome else None
        LOGGER.info(
            "Retrying %s (attempt %d/%d): %s",
            item.url,
            state.attempt_number,
            self.config.max_attempts,
            exc,
        )
        self._mark(item, TaskState.RETRY_PENDING, error_kind=getattr(exc, "kind", None))

    def _fetch_once(self, item: _WorkItem) -> RawPage:
        platform_key = item.platform.value
        strategy = self.escalation.get_current_level(platform_key) if self.renderer else "http"
        with self.rate_limiter.slot(platform_key):
            self._bump("fetches")
            if strategy == "rendered":
                self._bump("rendered")
                return self.renderer.fetch(item.url, item.platform)

            page = self.http_fetcher.fetch(item.url, item.platform)
            if self.renderer is None or self._adapters(item.platform).is_sufficient(page.html):
                return page

            LOGGER.info("Plain HTML looks insufficient for %s, trying rendered fetch", item.url)
            self._bump("rendered")
            try:
                return self.renderer.fetch(item.url, item.platform)
            except NetworkError as exc:
                LOGGER.warning("Rendered fetch failed for %s, keeping plain HTML: %s", item.url, exc)
                return page

    def _finish(
        self,
        item: _WorkItem,
        page: Optional[RawPage] = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        # Unregister before resolving so later submissions start a fresh fetch.
        with self._lock:
            entry = self._inflight.pop(item.key, None)
        tasks = entry.tasks if entry is not None else []
        if exc is not None:
            self._bump("failed")
            state = TaskState.BREAKER_OPEN if isinstance(exc, BreakerOpenError) else TaskState.FAILED
            for task in tasks:
                task.last_error_kind = getattr(exc, "kind", "unexpected")
                if task.can_advance(state):
                    task.advance(state)
            item.future.set_exception(exc)
        else:
            self._bump("succeeded")
            item.future.set_result(page)

    def _mark(self, item: _WorkItem, state: TaskState, error_kind: Optional[str] = None) -> None:
        with self._lock:
            entry = self._inflight.get(item.key)
            tasks = list(entry.tasks) if entry is not None else []
        for task in tasks:
            if error_kind:
                task.last_error_kind = error_kind
            if task.can_advance(state):
                task.advance(state)

    def _bump(self, name: str) -> None:
        with self._lock:
            self.stats[name] += 1

    def _notify_breaker_open(self, name: str, failures: int, cooldown: float) -> None:
        platform = Platform(name)
        for listener in list(self._listeners):
            try:
                listener(platform, failures, cooldown)
            except Exception as exc:
                LOGGER.error("Breaker listener failed for %s: %s", name, exc, exc_info=True)
