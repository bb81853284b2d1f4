"""Plain HTTP and rendered (headless browser) page fetchers."""
from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Protocol

import httpx
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from ..antibot import UserAgentPool, classify_block
from ..errors import BlockedError, NetworkError
from ..models import Platform, RawPage

LOGGER = logging.getLogger(__name__)

MAX_PAGE_BYTES = 10_000_000
RETRYABLE_STATUS_CODES = {408, 425, 500, 502, 503, 504}

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-gpu",
]


class PageFetcher(Protocol):
    """Fetch strategy interface."""

    name: str

    def fetch(self, url: str, platform: Platform) -> RawPage:
        """Fetch ``url``.

        Raises
        ------
        NetworkError
            Transient failure (retryable) or permanent HTTP error
        BlockedError
            Response classified as anti-bot / login wall
        """
        ...


def _check_response(url: str, final_url: str, status_code: int, html: str) -> None:
    reason = classify_block(status_code, final_url, html)
    if reason:
        raise BlockedError(reason, url=url, status_code=status_code)
    if status_code in RETRYABLE_STATUS_CODES:
        raise NetworkError(f"HTTP {status_code} for {url}", status_code=status_code)
    if status_code >= 400:
        raise NetworkError(
            f"HTTP {status_code} for {url}", retryable=False, status_code=status_code
        )


class HttpFetcher:
    """httpx-based fetcher with a hard per-request deadline."""

    name = "http"

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        referers: Optional[Dict[Platform, str]] = None,
        user_agents: Optional[UserAgentPool] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.timeout = timeout
        self.referers = referers or {}
        self.user_agents = user_agents or UserAgentPool()
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def fetch(self, url: str, platform: Platform) -> RawPage:
        started = time.monotonic()
        deadline = started + self.timeout
        headers = self.user_agents.headers(self.referers.get(platform))
        try:
            with self.client.stream("GET", url, headers=headers) as response:
                chunks = []
                size = 0
                for chunk in response.iter_bytes():
                    if time.monotonic() > deadline:
                        raise NetworkError(f"Hard timeout ({self.timeout:.0f}s) fetching {url}")
                    size += len(chunk)
                    if size > MAX_PAGE_BYTES:
                        raise NetworkError(f"Page too large: {url}", retryable=False)
                    chunks.append(chunk)
                html = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
                status_code = response.status_code
                final_url = str(response.url)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timeout fetching {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Transport error fetching {url}: {exc}") from exc

        _check_response(url, final_url, status_code, html)
        elapsed = time.monotonic() - started
        LOGGER.debug("Fetched %s (status=%s, %.2fs, %d bytes)", url, status_code, elapsed, size)
        return RawPage(
            url=url,
            final_url=final_url,
            status_code=status_code,
            html=html,
            strategy=self.name,
            elapsed=elapsed,
        )


class BrowserFetcher:
    """Headless Chromium fetch for pages that need JavaScript to render detail."""

    name = "rendered"

    def __init__(
        self,
        *,
        timeout: float = 45.0,
        settle_ms: int = 2000,
        referers: Optional[Dict[Platform, str]] = None,
        user_agents: Optional[UserAgentPool] = None,
    ) -> None:
        self.timeout = timeout
        self.settle_ms = settle_ms
        self.referers = referers or {}
        self.user_agents = user_agents or UserAgentPool()

    def fetch(self, url: str, platform: Platform) -> RawPage:
        # Playwright sync objects are bound to their thread, so every call
        # owns its own driver and browser.
        started = time.monotonic()
        timeout_ms = int(self.timeout * 1000)
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True, args=LAUNCH_ARGS)
                try:
                    context_kwargs = {"user_agent": self.user_agents.get_random()}
                    referer = self.referers.get(platform)
                    if referer:
                        context_kwargs["extra_http_headers"] = {"Referer": referer}
                    context = browser.new_context(**context_kwargs)
                    context.add_init_script(
                        "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"
                    )
                    page = context.new_page()
                    page.set_default_timeout(timeout_ms)
                    response = page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                    page.wait_for_timeout(self.settle_ms)
                    html = page.content()
                    final_url = page.url
                    status_code = response.status if response is not None else 200
                finally:
                    browser.close()
        except PlaywrightTimeoutError as exc:
            raise NetworkError(f"Render timeout for {url}: {exc}") from exc
        except PlaywrightError as exc:
            raise NetworkError(f"Render failed for {url}: {exc}") from exc

        _check_response(url, final_url, status_code, html)
        elapsed = time.monotonic() - started
        LOGGER.info("Rendered %s (status=%s, %.2fs)", url, status_code, elapsed)
        return RawPage(
            url=url,
            final_url=final_url,
            status_code=status_code,
            html=html,
            strategy=self.name,
            elapsed=elapsed,
        )
