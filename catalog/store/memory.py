"""Thread-safe in-process listing store."""
from __future__ import annotations

import itertools
import logging
import threading
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import Listing, Platform
from ..quality import DEFAULT_GOOD_THRESHOLD, QualityTier
from .base import CandidateQuery, incoming_wins, score
from .canonical import canonical_key, canonicalize_url

LOGGER = logging.getLogger(__name__)


class InMemoryListingStore:
    """Listing store backed by dicts.

    ``rows`` seeds the store as-is (duplicates included), mirroring a legacy
    table that has not been swept by :meth:`deduplicate` yet.
    """

    def __init__(
        self,
        rows: Optional[Iterable[Listing]] = None,
        *,
        tracking_params: Optional[List[str]] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._tracking_params = tracking_params
        self._rows: Dict[int, Listing] = {}
        self._ids = itertools.count(1)
        for row in rows or []:
            row = row.model_copy(deep=True)
            if row.id is None:
                row.id = next(self._ids)
            self._rows[row.id] = row
        if self._rows:
            self._ids = itertools.count(max(self._rows) + 1)

    def _key(self, platform: Platform, url: str) -> str:
        return canonical_key(platform, url, self._tracking_params)

    def _rows_for_key(self, key: str) -> List[Listing]:
        return [row for row in self._rows.values() if self._key(row.platform, row.url) == key]

    def upsert_listing(self, listing: Listing) -> Listing:
        incoming = listing.model_copy(deep=True)
        incoming.url = canonicalize_url(incoming.url, self._tracking_params)
        key = self._key(incoming.platform, incoming.url)

        with self._lock:
            existing_rows = sorted(self._rows_for_key(key), key=score, reverse=True)
            if not existing_rows:
                incoming.id = next(self._ids)
                self._rows[incoming.id] = incoming
                LOGGER.debug("Inserted listing %d (%s)", incoming.id, key)
                return incoming.model_copy(deep=True)

            best, losers = existing_rows[0], existing_rows[1:]
            for loser in losers:
                del self._rows[loser.id]
            if losers:
                LOGGER.info("Removed %d duplicate row(s) for %s", len(losers), key)

            if incoming_wins(best, incoming):
                incoming.id = best.id
                incoming.created_at = best.created_at
                self._rows[best.id] = incoming
                LOGGER.debug("Replaced listing %d with incoming record", best.id)
                return incoming.model_copy(deep=True)

            LOGGER.info(
                "Kept existing listing %d for %s (score %.1f > %.1f)",
                best.id,
                key,
                score(best),
                score(incoming),
            )
            return best.model_copy(deep=True)

    def find_by_canonical_key(self, platform: Platform, url: str) -> Optional[Listing]:
        key = self._key(Platform(platform), url)
        with self._lock:
            rows = sorted(self._rows_for_key(key), key=score, reverse=True)
            return rows[0].model_copy(deep=True) if rows else None

    def get(self, listing_id: int) -> Optional[Listing]:
        with self._lock:
            row = self._rows.get(listing_id)
            return row.model_copy(deep=True) if row else None

    def list_listings(self, platform: Optional[Platform] = None, limit: Optional[int] = None) -> List[Listing]:
        with self._lock:
            rows = [
                row.model_copy(deep=True)
                for _, row in sorted(self._rows.items())
                if platform is None or row.platform == platform
            ]
        return rows[:limit] if limit is not None else rows

    def count_by_platform_and_tier(
        self, good_threshold: int = DEFAULT_GOOD_THRESHOLD
    ) -> Dict[Tuple[Platform, QualityTier], int]:
        with self._lock:
            counts = Counter(
                (row.platform, row.quality_tier(good_threshold)) for row in self._rows.values()
            )
        return dict(counts)

    def refresh_candidates(self, query: CandidateQuery) -> List[Listing]:
        with self._lock:
            rows = [row for _, row in sorted(self._rows.items()) if query.matches(row)]
            return [row.model_copy(deep=True) for row in rows[: query.limit]]

    def deduplicate(self) -> int:
        with self._lock:
            groups: Dict[str, List[Listing]] = {}
            for row in self._rows.values():
                groups.setdefault(self._key(row.platform, row.url), []).append(row)
            deleted = 0
            for rows in groups.values():
                if len(rows) < 2:
                    continue
                # Lowest id wins exact ties so the sweep is deterministic.
                rows.sort(key=lambda r: (-score(r), r.id))
                keeper = rows[0]
                for loser in rows[1:]:
                    del self._rows[loser.id]
                    deleted += 1
                keeper.url = canonicalize_url(keeper.url, self._tracking_params)
        LOGGER.info("Removed %d duplicate rows", deleted)
        return deleted

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
