"""Completeness classification of detail payloads.

The tier is always derived from the current payload and is never stored.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence

DEFAULT_GOOD_THRESHOLD = 10


class QualityTier(str, Enum):
    """Detail completeness, ordered by refresh urgency."""

    MISSING = "MISSING"
    BAD = "BAD"
    PARTIAL = "PARTIAL"
    GOOD = "GOOD"

    @property
    def refresh_rank(self) -> int:
        """Lower rank is refreshed first."""
        return _RANKS[self]


_RANKS = {
    QualityTier.MISSING: 0,
    QualityTier.BAD: 1,
    QualityTier.PARTIAL: 2,
    QualityTier.GOOD: 3,
}


def _field(detail: Any, name: str) -> Optional[Sequence[Any]]:
    if isinstance(detail, dict):
        return detail.get(name)
    return getattr(detail, name, None)


def classify(detail: Any, good_threshold: int = DEFAULT_GOOD_THRESHOLD) -> QualityTier:
    """Classify a detail payload by attribute count.

    Parameters
    ----------
    detail : DetailPayload, dict or None
        Payload to classify; ``None`` means no detail was ever fetched
    good_threshold : int
        Minimum attribute count for ``GOOD``

    Returns
    -------
    QualityTier
        MISSING, BAD (no attributes), PARTIAL or GOOD
    """
    if good_threshold < 1:
        raise ValueError("good_threshold must be at least 1")
    if detail is None:
        return QualityTier.MISSING

    attributes = _field(detail, "attributes") or ()
    count = len(attributes)
    if count == 0:
        return QualityTier.BAD
    if count < good_threshold:
        return QualityTier.PARTIAL
    return QualityTier.GOOD


@dataclass(frozen=True)
class QualitySummary:
    """Result returned to on-demand rescrape callers."""

    attribute_count: int
    price_tier_count: int
    quality_tier: QualityTier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribute_count": self.attribute_count,
            "price_tier_count": self.price_tier_count,
            "quality_tier": self.quality_tier.value,
        }


def summarize(detail: Any, good_threshold: int = DEFAULT_GOOD_THRESHOLD) -> QualitySummary:
    if detail is None:
        return QualitySummary(0, 0, QualityTier.MISSING)
    return QualitySummary(
        attribute_count=len(_field(detail, "attributes") or ()),
        price_tier_count=len(_field(detail, "price_tiers") or ()),
        quality_tier=classify(detail, good_threshold),
    )
