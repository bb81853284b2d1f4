"""Gallery candidate filtering and ranking.

Marketplaces often list a banner, badge or thumbnail first, so candidates
are filtered by URL heuristics and then re-ordered by encoded size token
instead of taking the first match.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlsplit

from ..config import ImageConfig
from ..models import Platform

# "_960x960.jpg", "-200x200_", "_50x50q90.jpg"
SIZE_TOKEN_RE = re.compile(r"[_-](\d{2,4})x(\d{2,4})(?=[._-]|q\d|$)", re.IGNORECASE)
# Alibaba-group CMS assets: "...-tps-960-102.png"
TPS_RE = re.compile(r"tps-(\d{2,4})-(\d{2,4})", re.IGNORECASE)
QUERY_WIDTH_KEYS = ("w", "width")
QUERY_HEIGHT_KEYS = ("h", "height")
ALICDN_THUMBNAIL_RE = re.compile(r"_(?:50x50|80x80|100x100|120x120)(\.(?:jpe?g|png|webp))$", re.IGNORECASE)


@dataclass
class FilterRules:
    """Effective image heuristics for one platform."""

    min_dimension: int = 200
    max_aspect_ratio: float = 4.0
    banner_max_side: int = 300
    blocklist: Sequence[str] = ()
    keywords: Sequence[str] = ()
    preferred_size_tokens: Sequence[str] = ("960x960",)
    fallback_size_tokens: Sequence[str] = ("640x640", "600x600", "350x350")
    _keyword_re: Optional[re.Pattern] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.keywords:
            alternatives = "|".join(re.escape(k.lower()) for k in self.keywords)
            # Keywords must start a word: "icon" matches "icon_1.png", not "silicone".
            self._keyword_re = re.compile(rf"(?:^|[^a-z])(?:{alternatives})")

    @classmethod
    def from_config(cls, config: ImageConfig, platform: Optional[Platform] = None) -> "FilterRules":
        blocklist = list(config.blocklist)
        if platform is not None:
            blocklist.extend(config.platform_blocklist.get(platform, []))
        return cls(
            min_dimension=config.min_dimension,
            max_aspect_ratio=config.max_aspect_ratio,
            banner_max_side=config.banner_max_side,
            blocklist=blocklist,
            keywords=config.blocked_keywords,
            preferred_size_tokens=config.preferred_size_tokens,
            fallback_size_tokens=config.fallback_size_tokens,
        )

    def keyword_match(self, text: str) -> Optional[str]:
        if self._keyword_re is None:
            return None
        match = self._keyword_re.search(text.lower())
        return match.group(0).lstrip("/_-.") if match else None


def normalize_candidate(url: str) -> str:
    """Absolutize protocol-relative URLs and upgrade tiny alicdn thumbnails."""
    value = (url or "").strip()
    if value.startswith("//"):
        value = "https:" + value
    if "alicdn.com" in value:
        value = ALICDN_THUMBNAIL_RE.sub(r"_350x350\1", value)
    return value


def encoded_dimensions(url: str) -> Optional[Tuple[int, int]]:
    """Width/height encoded in the URL, if any (last size token wins)."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    path = parts.path
    tokens = SIZE_TOKEN_RE.findall(path)
    if tokens:
        width, height = tokens[-1]
        return int(width), int(height)
    match = TPS_RE.search(path)
    if match:
        return int(match.group(1)), int(match.group(2))
    query = parse_qs(parts.query)
    width = next((query[k][0] for k in QUERY_WIDTH_KEYS if k in query), None)
    height = next((query[k][0] for k in QUERY_HEIGHT_KEYS if k in query), None)
    if width and height and width.isdigit() and height.isdigit():
        return int(width), int(height)
    return None


def dimension_rejection(width: int, height: int, rules: FilterRules) -> Optional[str]:
    """Shared by URL filtering and post-download verification."""
    if width < rules.min_dimension or height < rules.min_dimension:
        return f"too small ({width}x{height})"
    small_side, large_side = sorted((width, height))
    if small_side and large_side / small_side > rules.max_aspect_ratio and small_side < rules.banner_max_side:
        return f"banner aspect ratio ({width}x{height})"
    return None


def rejection_reason(url: str, rules: FilterRules) -> Optional[str]:
    """Why ``url`` is not a usable product image, or None if it passes."""
    if not url.startswith(("http://", "https://")):
        return "not an absolute http(s) url"
    try:
        path = urlsplit(url).path
    except ValueError:
        return "unparseable url"
    lowered = url.lower()
    for entry in rules.blocklist:
        if entry and entry.lower() in lowered:
            return f"blocklisted ({entry})"
    dims = encoded_dimensions(url)
    if dims is not None:
        reason = dimension_rejection(dims[0], dims[1], rules)
        if reason:
            return reason
    keyword = rules.keyword_match(path.rsplit("/", 1)[-1]) or rules.keyword_match(path)
    if keyword:
        return f"keyword ({keyword})"
    return None


def filter_candidates(gallery: Iterable[str], rules: FilterRules) -> List[str]:
    """Drop unusable candidates, keeping input order and removing duplicates."""
    out: List[str] = []
    for raw in gallery or []:
        if not isinstance(raw, str):
            continue
        url = normalize_candidate(raw)
        if not url or url in out:
            continue
        if rejection_reason(url, rules) is None:
            out.append(url)
    return out


def _size_class(url: str, rules: FilterRules) -> Tuple[int, int]:
    lowered = url.lower()
    for idx, token in enumerate(rules.preferred_size_tokens):
        if f"_{token}" in lowered or f"-{token}" in lowered:
            return 0, idx
    if encoded_dimensions(url) is None:
        return 1, 0
    for idx, token in enumerate(rules.fallback_size_tokens):
        if f"_{token}" in lowered or f"-{token}" in lowered:
            return 2, idx
    return 3, 0


def rank_candidates(urls: Sequence[str], rules: FilterRules) -> List[str]:
    """Order survivors: preferred size token, un-sized original, smaller known-good tokens, rest.

    The sort is stable, so gallery order breaks ties within a class.
    """
    return sorted(urls, key=lambda url: _size_class(url, rules))
