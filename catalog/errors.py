"""Error taxonomy for the ingestion pipeline."""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class; ``kind`` is recorded on the scrape task."""

    kind = "pipeline"


class NetworkError(PipelineError):
    """Transient transport failure or timeout."""

    kind = "network"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class BlockedError(PipelineError):
    """Anti-bot challenge, login wall or automated-traffic fingerprint."""

    kind = "blocked"

    def __init__(self, reason: str, *, url: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(f"Blocked ({reason}): {url}" if url else f"Blocked ({reason})")
        self.reason = reason
        self.url = url
        self.status_code = status_code


class BreakerOpenError(PipelineError):
    """Platform circuit breaker is open; no network I/O was attempted."""

    kind = "breaker_open"

    def __init__(self, platform: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit breaker OPEN for {platform} (retry in {retry_after:.0f}s)"
        )
        self.platform = platform
        self.retry_after = retry_after


class ParseError(PipelineError):
    """No extraction strategy produced usable data."""

    kind = "parse"


class ImageFetchError(PipelineError):
    """A single gallery candidate could not be used."""

    kind = "image"

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{reason}: {url}")
        self.url = url
        self.reason = reason


class StoreError(PipelineError):
    """Persistence failure for the current attempt."""

    kind = "store"


class RescrapeError(PipelineError):
    """On-demand rescrape could not reach the target."""

    kind = "rescrape"

    def __init__(self, listing_id: int, reason: str) -> None:
        super().__init__(f"Rescrape of listing {listing_id} failed: {reason}")
        self.listing_id = listing_id
        self.reason = reason
