"""Image candidate filtering, download verification and caching."""

from .cache import CacheEntry, ContentAddressedCache
from .filters import FilterRules, filter_candidates, rank_candidates
from .resolver import ImageResolution, ImageResolver

__all__ = [
    "CacheEntry",
    "ContentAddressedCache",
    "FilterRules",
    "filter_candidates",
    "rank_candidates",
    "ImageResolution",
    "ImageResolver",
]
