import threading
from concurrent.futures import wait

import pytest

from catalog.errors import BlockedError, BreakerOpenError, NetworkError
from catalog.models import Platform, ScrapeTask, TaskState

URL = "https://www.alibaba.com/product-detail/widget_1.html"


def _task(url: str = URL) -> ScrapeTask:
    return ScrapeTask(url=url, platform=Platform.ALIBABA)


def test_concurrent_submissions_share_one_fetch(orchestrator_factory, fake_fetcher_cls):
    gate = threading.Event()
    fetcher = fake_fetcher_cls(gate=gate)
    orchestrator = orchestrator_factory(fetcher)

    variants = [URL, URL + "?spm=a2700.1", URL + "#reviews", "HTTPS://WWW.Alibaba.com/product-detail/widget_1.html", URL + "/"]
    futures = [orchestrator.submit(url, Platform.ALIBABA) for url in variants]
    assert fetcher.started.wait(5)
    assert orchestrator.in_flight() == 1
    gate.set()

    pages = [future.result(timeout=5) for future in futures]
    assert len({id(future) for future in futures}) == 1
    assert all(page is pages[0] for page in pages)
    assert fetcher.calls == [URL]
    assert orchestrator.stats["coalesced"] == 4
    assert orchestrator.in_flight() == 0


def test_new_fetch_after_previous_completes(orchestrator_factory, fake_fetcher_cls):
    fetcher = fake_fetcher_cls()
    orchestrator = orchestrator_factory(fetcher)
    orchestrator.fetch(URL, Platform.ALIBABA, timeout=5)
    orchestrator.fetch(URL, Platform.ALIBABA, timeout=5)
    assert len(fetcher.calls) == 2


def test_transient_errors_are_retried(orchestrator_factory, fake_fetcher_cls):
    fetcher = fake_fetcher_cls(errors=[NetworkError("reset"), NetworkError("timeout")])
    orchestrator = orchestrator_factory(fetcher)
    task = _task()

    page = orchestrator.submit(URL, Platform.ALIBABA, task=task).result(timeout=5)

    assert page.status_code == 200
    assert len(fetcher.calls) == 3
    assert orchestrator.stats["retries"] == 2
    assert task.attempts == 3
    assert TaskState.RETRY_PENDING in task.history
    assert task.state == TaskState.FETCHING


def test_retry_budget_exhausted_fails_task(orchestrator_factory, fake_fetcher_cls):
    fetcher = fake_fetcher_cls(always=NetworkError("down"))
    orchestrator = orchestrator_factory(fetcher)
    task = _task()

    future = orchestrator.submit(URL, Platform.ALIBABA, task=task)
    with pytest.raises(NetworkError):
        future.result(timeout=5)

    assert len(fetcher.calls) == 3
    assert task.state == TaskState.FAILED
    assert task.last_error_kind == "network"


def test_permanent_http_error_is_not_retried(orchestrator_factory, fake_fetcher_cls):
    fetcher = fake_fetcher_cls(always=NetworkError("HTTP 404", retryable=False, status_code=404))
    orchestrator = orchestrator_factory(fetcher)
    with pytest.raises(NetworkError):
        orchestrator.fetch(URL, Platform.ALIBABA, timeout=5)
    assert len(fetcher.calls) == 1


def _trip_breaker(orchestrator, count=2):
    for idx in range(count):
        with pytest.raises(BlockedError):
            orchestrator.fetch(f"https://www.alibaba.com/product-detail/blocked_{idx}.html", Platform.ALIBABA, timeout=5)


def test_open_breaker_fails_fast_without_io(orchestrator_factory, fake_fetcher_cls, clock):
    fetcher = fake_fetcher_cls(always=BlockedError("status_403"))
    orchestrator = orchestrator_factory(fetcher, clock=clock)
    _trip_breaker(orchestrator)
    assert orchestrator.breaker_state(Platform.ALIBABA) == "open"

    task = _task()
    future = orchestrator.submit(URL, Platform.ALIBABA, task=task)

    assert future.done()
    with pytest.raises(BreakerOpenError) as excinfo:
        future.result()
    assert excinfo.value.retry_after == 60.0
    assert len(fetcher.calls) == 2
    assert task.state == TaskState.BREAKER_OPEN


def test_breaker_admits_single_trial_after_cooldown(orchestrator_factory, fake_fetcher_cls, clock):
    fetcher = fake_fetcher_cls(always=BlockedError("status_403"))
    orchestrator = orchestrator_factory(fetcher, clock=clock)
    _trip_breaker(orchestrator)

    gate = threading.Event()
    fetcher.always = None
    fetcher.gate = gate
    fetcher.started.clear()
    clock.advance(60)

    trial = orchestrator.submit(URL, Platform.ALIBABA)
    assert fetcher.started.wait(5)
    assert orchestrator.breaker_state(Platform.ALIBABA) == "half_open"

    second = orchestrator.submit("https://www.alibaba.com/product-detail/other_2.html", Platform.ALIBABA)
    assert isinstance(second.exception(timeout=5), BreakerOpenError)

    gate.set()
    assert trial.result(timeout=5).status_code == 200
    assert orchestrator.breaker_state(Platform.ALIBABA) == "closed"
    assert len(fetcher.calls) == 3


def test_breaker_is_per_platform(orchestrator_factory, fake_fetcher_cls, clock):
    fetcher = fake_fetcher_cls(always=BlockedError("status_403"))
    orchestrator = orchestrator_factory(fetcher, clock=clock)
    _trip_breaker(orchestrator)

    fetcher.always = None
    page = orchestrator.fetch("https://www.indiamart.com/proddetail/pump-1.html", Platform.INDIAMART, timeout=5)
    assert page.status_code == 200
    assert orchestrator.breaker_state(Platform.INDIAMART) == "closed"


def test_breaker_open_listener_notified(orchestrator_factory, fake_fetcher_cls, clock):
    events = []
    fetcher = fake_fetcher_cls(always=BlockedError("status_429"))
    orchestrator = orchestrator_factory(fetcher, clock=clock)
    orchestrator.add_breaker_listener(lambda *args: events.append(args))

    _trip_breaker(orchestrator)

    assert events == [(Platform.ALIBABA, 2, 60.0)]


def test_network_errors_do_not_trip_breaker(orchestrator_factory, fake_fetcher_cls, clock):
    fetcher = fake_fetcher_cls(always=NetworkError("HTTP 503", status_code=503))
    orchestrator = orchestrator_factory(fetcher, clock=clock, max_attempts=1)
    for idx in range(4):
        with pytest.raises(NetworkError):
            orchestrator.fetch(f"https://www.alibaba.com/product-detail/w_{idx}.html", Platform.ALIBABA, timeout=5)
    assert orchestrator.breaker_state(Platform.ALIBABA) == "closed"


def test_higher_priority_dispatched_first(orchestrator_factory, fake_fetcher_cls):
    blocker = "https://www.alibaba.com/product-detail/blocker.html"
    gate = threading.Event()
    fetcher = fake_fetcher_cls(gate=gate, gate_urls=[blocker])
    orchestrator = orchestrator_factory(fetcher, global_concurrency=1)

    first = orchestrator.submit(blocker, Platform.ALIBABA)
    assert fetcher.started.wait(5)
    low = orchestrator.submit("https://www.alibaba.com/product-detail/low.html", Platform.ALIBABA, priority=0)
    high = orchestrator.submit("https://www.alibaba.com/product-detail/high.html", Platform.ALIBABA, priority=30)
    mid = orchestrator.submit("https://www.alibaba.com/product-detail/mid.html", Platform.ALIBABA, priority=10)
    gate.set()

    done, not_done = wait([first, low, high, mid], timeout=5)
    assert not not_done
    assert [url.rsplit("/", 1)[-1] for url in fetcher.calls] == ["blocker.html", "high.html", "mid.html", "low.html"]


def test_insufficient_html_escalates_to_rendered_fetch(orchestrator_factory, fake_fetcher_cls, alibaba_html):
    http = fake_fetcher_cls(default_html="<html><body><h1>Loading...</h1></body></html>")
    renderer = fake_fetcher_cls(default_html=alibaba_html, name="rendered")
    orchestrator = orchestrator_factory(http, renderer=renderer)

    page = orchestrator.fetch(URL, Platform.ALIBABA, timeout=5)

    assert page.strategy == "rendered"
    assert len(http.calls) == 1
    assert len(renderer.calls) == 1
    assert orchestrator.stats["rendered"] == 1


def test_sufficient_html_skips_renderer(orchestrator_factory, fake_fetcher_cls, alibaba_html):
    http = fake_fetcher_cls(default_html=alibaba_html)
    renderer = fake_fetcher_cls(name="rendered")
    orchestrator = orchestrator_factory(http, renderer=renderer)

    page = orchestrator.fetch(URL, Platform.ALIBABA, timeout=5)

    assert page.strategy == "http"
    assert renderer.calls == []


def test_rendering_disabled_keeps_plain_html(orchestrator_factory, fake_fetcher_cls):
    http = fake_fetcher_cls(default_html="<html><body>thin</body></html>")
    orchestrator = orchestrator_factory(http)
    assert orchestrator.renderer is None
    assert orchestrator.fetch(URL, Platform.ALIBABA, timeout=5).strategy == "http"


def test_block_escalates_platform_to_renderer(orchestrator_factory, fake_fetcher_cls, clock, alibaba_html):
    http = fake_fetcher_cls(always=BlockedError("status_403"))
    renderer = fake_fetcher_cls(default_html=alibaba_html, name="rendered")
    orchestrator = orchestrator_factory(http, renderer=renderer, clock=clock)

    with pytest.raises(BlockedError):
        orchestrator.fetch(URL, Platform.ALIBABA, timeout=5)
    assert orchestrator.escalation.get_current_level("alibaba") == "rendered"

    page = orchestrator.fetch("https://www.alibaba.com/product-detail/next_2.html", Platform.ALIBABA, timeout=5)
    assert page.strategy == "rendered"
    assert len(http.calls) == 1
    assert orchestrator.breaker_state(Platform.ALIBABA) == "closed"


def test_submit_after_shutdown_rejected(orchestrator_factory, fake_fetcher_cls):
    orchestrator = orchestrator_factory(fake_fetcher_cls())
    orchestrator.fetch(URL, Platform.ALIBABA, timeout=5)
    orchestrator.shutdown()
    with pytest.raises(RuntimeError):
        orchestrator.submit(URL, Platform.ALIBABA)


@pytest.mark.filterwarnings("error::DeprecationWarning")
def test_network_error_during_trial_frees_slot(orchestrator_factory, fake_fetcher_cls, clock):
    fetcher = fake_fetcher_cls(always=BlockedError("status_403"))
    orchestrator = orchestrator_factory(fetcher, clock=clock)
    _trip_breaker(orchestrator)

    fetcher.always = NetworkError("connection reset")
    clock.advance(60)
    trial = orchestrator.submit(URL, Platform.ALIBABA)

    assert isinstance(trial.exception(timeout=5), NetworkError)
    assert len(fetcher.calls) == 2 + 3
    assert orchestrator.breaker_state(Platform.ALIBABA) == "half_open"

    fetcher.always = None
    retry = orchestrator.submit(URL, Platform.ALIBABA)
    assert retry.result(timeout=5).status_code == 200
    assert orchestrator.breaker_state(Platform.ALIBABA) == "closed"
