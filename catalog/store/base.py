"""Listing store contract and duplicate scoring."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from ..models import Listing, Platform
from ..quality import DEFAULT_GOOD_THRESHOLD, QualityTier

CACHED_IMAGE_WEIGHT = 1_000_000
SECONDS_PER_DAY = 86400.0


def score(listing: Listing) -> float:
    """Rank duplicates of one canonical URL.

    A real cached image outweighs any recency; description length only
    breaks ties.
    """
    image = CACHED_IMAGE_WEIGHT if listing.has_cached_image else 0
    recency = listing.updated_at.timestamp() / SECONDS_PER_DAY if listing.updated_at else 0.0
    return image + recency + len(listing.description or "") / 1000.0


def incoming_wins(existing: Listing, incoming: Listing) -> bool:
    """True if ``incoming`` should replace ``existing`` (ties go to incoming)."""
    return score(incoming) >= score(existing)


@dataclass(frozen=True)
class CandidateQuery:
    """Scheduler selection for one quality tier."""

    tier: QualityTier
    after_id: int = 0
    limit: int = 50
    platform: Optional[Platform] = None
    stale_before: Optional[datetime] = None  # only GOOD rows older than this
    refreshed_since: Optional[datetime] = None  # skip rows refreshed after this
    good_threshold: int = DEFAULT_GOOD_THRESHOLD

    def matches(self, listing: Listing) -> bool:
        if listing.id is None or listing.id <= self.after_id:
            return False
        if self.platform is not None and listing.platform != self.platform:
            return False
        if listing.quality_tier(self.good_threshold) != self.tier:
            return False
        refreshed = listing.detail_updated_at
        if self.refreshed_since is not None and refreshed is not None and refreshed >= self.refreshed_since:
            return False
        if self.tier == QualityTier.GOOD and self.stale_before is not None:
            return refreshed is None or refreshed < self.stale_before
        return True


class ListingStore(Protocol):
    """Persistence boundary; the only writer of listing rows."""

    def upsert_listing(self, listing: Listing) -> Listing:
        """Insert or merge by canonical key, keeping the higher-scoring record.

        Returns
        -------
        Listing
            The stored row (with its id) after the merge
        """
        ...

    def find_by_canonical_key(self, platform: Platform, url: str) -> Optional[Listing]:
        ...

    def get(self, listing_id: int) -> Optional[Listing]:
        ...

    def list_listings(self, platform: Optional[Platform] = None, limit: Optional[int] = None) -> List[Listing]:
        ...

    def count_by_platform_and_tier(
        self, good_threshold: int = DEFAULT_GOOD_THRESHOLD
    ) -> Dict[Tuple[Platform, QualityTier], int]:
        ...

    def refresh_candidates(self, query: CandidateQuery) -> List[Listing]:
        """Rows of ``query.tier`` with id > ``query.after_id``, ordered by id."""
        ...

    def deduplicate(self) -> int:
        """Hard-delete all but the best-scoring row per canonical key; returns deleted count."""
        ...
