"""Canonical listing URLs: the dedup key."""
from __future__ import annotations

import fnmatch
from typing import Iterable, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..config import DEFAULT_TRACKING_PARAMS

DEFAULT_PORTS = {"http": 80, "https": 443}


def _is_tracking(name: str, patterns: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatchcase(lowered, pattern.lower()) for pattern in patterns)


def canonicalize_url(url: str, tracking_params: Optional[Iterable[str]] = None) -> str:
    """Normalize a listing URL.

    Lower-cases scheme and host, drops default ports, the fragment and
    tracking query parameters, sorts the remaining parameters and strips a
    trailing slash from non-root paths. Protocol-relative and scheme-less
    URLs are treated as https.
    """
    patterns = list(DEFAULT_TRACKING_PARAMS if tracking_params is None else tracking_params)
    raw = (url or "").strip()
    if raw.startswith("//"):
        raw = "https:" + raw
    elif raw and "://" not in raw:
        raw = "https://" + raw

    parts = urlsplit(raw)
    scheme = (parts.scheme or "https").lower()
    host = (parts.hostname or "").lower()
    netloc = host
    try:
        port = parts.port
    except ValueError:
        port = None
    if port and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking(key, patterns)
    ]
    query.sort()
    return urlunsplit((scheme, netloc, path, urlencode(query), ""))


def canonical_key(platform: str, url: str, tracking_params: Optional[Iterable[str]] = None) -> str:
    """Store-wide unique key: platform plus canonical URL."""
    value = getattr(platform, "value", platform)
    return f"{value}:{canonicalize_url(url, tracking_params)}"
