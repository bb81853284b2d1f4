"""Pydantic models shared across catalog components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .quality import DEFAULT_GOOD_THRESHOLD, QualityTier, classify


def utcnow() -> datetime:
    """Timezone-aware current time, used for every persisted timestamp."""
    return datetime.now(timezone.utc)


class Platform(str, Enum):
    """Marketplaces with a registered provider adapter."""

    ALIBABA = "alibaba"
    MADE_IN_CHINA = "made_in_china"
    INDIAMART = "indiamart"
    GLOBAL_SOURCES = "global_sources"


class ImageStatus(str, Enum):
    """Outcome of image resolution for a listing."""

    PENDING = "pending"  # not yet attempted
    CACHED = "cached"  # real image stored in the content-addressed cache
    UNRESOLVED = "unresolved"  # every gallery candidate failed
    PLACEHOLDER = "placeholder"  # seed/stock image, not a product photo


class PriceTier(BaseModel):
    min_qty: Optional[int] = None
    max_qty: Optional[int] = None  # None means open-ended ("≥ min_qty")
    price_text: str = ""

    @property
    def label(self) -> str:
        if self.min_qty is None:
            return ""
        if self.max_qty is None:
            return f"≥ {self.min_qty}"
        return f"{self.min_qty} - {self.max_qty}"


class Supplier(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    logo: Optional[str] = None


class DetailPayload(BaseModel):
    """Structured data from a product detail page.

    Replaced wholesale on every successful detail fetch.
    """

    attributes: List[Tuple[str, str]] = Field(default_factory=list)
    price_tiers: List[PriceTier] = Field(default_factory=list)
    gallery: List[str] = Field(default_factory=list)
    supplier: Supplier = Field(default_factory=Supplier)
    description: str = ""
    packaging: List[Tuple[str, str]] = Field(default_factory=list)
    moq: Optional[int] = None
    moq_text: Optional[str] = None
    sold_count: Optional[int] = None


class PartialListing(BaseModel):
    """Summary-level fields an adapter reads from a page."""

    title: str = ""
    image_candidates: List[str] = Field(default_factory=list)
    price_raw: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None
    moq_raw: Optional[str] = None
    moq: Optional[int] = None
    store_name: Optional[str] = None
    description: str = ""
    categories: List[str] = Field(default_factory=list)


class Listing(BaseModel):
    """Normalized catalog record, one per (platform, canonical url)."""

    id: Optional[int] = None
    platform: Platform
    url: str
    title: str = ""
    image: Optional[str] = None
    image_status: ImageStatus = ImageStatus.PENDING
    price_raw: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None
    moq_raw: Optional[str] = None
    moq: Optional[int] = None
    store_name: Optional[str] = None
    description: str = ""
    categories: List[str] = Field(default_factory=list)
    terms: List[str] = Field(default_factory=list)
    detail: Optional[DetailPayload] = None
    detail_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def quality_tier(self, good_threshold: int = DEFAULT_GOOD_THRESHOLD) -> QualityTier:
        """Tier of the current detail payload under the configured GOOD threshold."""
        return classify(self.detail, good_threshold)

    @property
    def has_cached_image(self) -> bool:
        return self.image_status == ImageStatus.CACHED and bool(self.image)

    @property
    def gallery(self) -> List[str]:
        return list(self.detail.gallery) if self.detail else []


class TaskState(str, Enum):
    """Lifecycle of a single scrape attempt."""

    PENDING = "pending"
    FETCHING = "fetching"
    RETRY_PENDING = "retry_pending"
    PARSED = "parsed"
    CLASSIFIED = "classified"
    IMAGE_RESOLVED = "image_resolved"
    STORED = "stored"
    BREAKER_OPEN = "breaker_open"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {TaskState.STORED, TaskState.BREAKER_OPEN, TaskState.FAILED}

_TRANSITIONS: Dict[TaskState, Tuple[TaskState, ...]] = {
    TaskState.PENDING: (TaskState.FETCHING, TaskState.BREAKER_OPEN),
    TaskState.FETCHING: (
        TaskState.PARSED,
        TaskState.RETRY_PENDING,
        TaskState.BREAKER_OPEN,
        TaskState.FAILED,
    ),
    TaskState.RETRY_PENDING: (TaskState.FETCHING, TaskState.FAILED),
    TaskState.PARSED: (TaskState.CLASSIFIED,),
    TaskState.CLASSIFIED: (TaskState.IMAGE_RESOLVED,),
    TaskState.IMAGE_RESOLVED: (TaskState.STORED, TaskState.FAILED),
}


@dataclass
class ScrapeTask:
    """Ephemeral unit of work; never persisted."""

    url: str
    platform: Platform
    priority: int = 0
    listing_id: Optional[int] = None
    attempts: int = 0
    state: TaskState = TaskState.PENDING
    last_error_kind: Optional[str] = None
    history: List[TaskState] = field(default_factory=list)

    def can_advance(self, new_state: TaskState) -> bool:
        return new_state in _TRANSITIONS.get(self.state, ())

    def advance(self, new_state: TaskState) -> None:
        """Move to ``new_state``; raises ValueError on an illegal transition."""
        if not self.can_advance(new_state):
            raise ValueError(
                f"Illegal task transition {self.state.value} -> {new_state.value}"
            )
        self.history.append(self.state)
        self.state = new_state
        if new_state == TaskState.FETCHING:
            self.attempts += 1

    def fail(self, error_kind: str) -> None:
        self.last_error_kind = error_kind
        self.advance(TaskState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "platform": self.platform.value,
            "priority": self.priority,
            "listing_id": self.listing_id,
            "attempts": self.attempts,
            "state": self.state.value,
            "last_error_kind": self.last_error_kind,
        }


@dataclass
class RawPage:
    """HTML returned by the fetch orchestrator."""

    url: str
    final_url: str
    status_code: int
    html: str
    strategy: str = "http"
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "final_url": self.final_url,
            "status_code": self.status_code,
            "strategy": self.strategy,
            "elapsed": self.elapsed,
            "html_length": len(self.html),
        }
