"""Pick, download, verify and cache a representative product image."""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from ..antibot import UserAgentPool
from ..config import ImageConfig
from ..errors import ImageFetchError
from ..models import ImageStatus, Platform
from .cache import CacheEntry, ContentAddressedCache
from .filters import FilterRules, dimension_rejection, filter_candidates, rank_candidates

LOGGER = logging.getLogger(__name__)

FORMAT_EXTENSIONS: Dict[str, str] = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}


@dataclass
class ImageResolution:
    """Outcome of resolving one gallery."""

    status: ImageStatus
    image: Optional[str] = None
    source_url: Optional[str] = None
    entry: Optional[CacheEntry] = None
    rejected: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.status == ImageStatus.CACHED


class ImageResolver:
    """Resolve a gallery to a cached image.

    Candidates are filtered and ranked by URL heuristics, then downloaded in
    order; any per-candidate failure falls through to the next one.
    """

    def __init__(
        self,
        cache: ContentAddressedCache,
        config: Optional[ImageConfig] = None,
        *,
        client: Optional[httpx.Client] = None,
        user_agents: Optional[UserAgentPool] = None,
        referers: Optional[Dict[Platform, str]] = None,
    ) -> None:
        """Initialize resolver.

        Parameters
        ----------
        cache : ContentAddressedCache
            Destination for downloaded images
        config : ImageConfig, optional
            Heuristic thresholds and blocklists
        client : httpx.Client, optional
            HTTP client (tests pass one with a mock transport)
        user_agents : UserAgentPool, optional
            Source of rotated request headers
        referers : dict, optional
            Referer sent per platform, usually ``OrchestratorConfig.referers()``
        """
        self.cache = cache
        self.config = config or ImageConfig()
        self.user_agents = user_agents or UserAgentPool()
        self.referers = dict(referers or {})
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(self.config.download_timeout),
            follow_redirects=True,
        )
        self._blocked_hashes = {h.lower() for h in self.config.blocked_content_hashes}

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "ImageResolver":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def candidates(self, gallery: Iterable[str], platform: Optional[Platform] = None) -> List[str]:
        rules = FilterRules.from_config(self.config, platform)
        return rank_candidates(filter_candidates(gallery, rules), rules)

    def resolve(self, gallery: Iterable[str], platform: Optional[Platform] = None) -> ImageResolution:
        """Return the first candidate that downloads and verifies, or UNRESOLVED.

        Parameters
        ----------
        gallery : iterable of str
            Image URLs in source order
        platform : Platform, optional
            Selects per-platform blocklist, referer and format normalization

        Returns
        -------
        ImageResolution
            CACHED with the public cache path, or UNRESOLVED
        """
        gallery = list(gallery or [])
        ranked = self.candidates(gallery, platform)
        rejected: List[Tuple[str, str]] = []
        for url in ranked:
            try:
                entry = self.cache_url(url, platform)
            except ImageFetchError as exc:
                LOGGER.debug("Image candidate rejected: %s", exc)
                rejected.append((url, exc.reason))
                continue
            return ImageResolution(
                status=ImageStatus.CACHED,
                image=entry.public_path,
                source_url=url,
                entry=entry,
                rejected=rejected,
            )

        LOGGER.info(
            "No usable image (gallery=%d, candidates=%d, platform=%s)",
            len(gallery),
            len(ranked),
            platform.value if platform else "-",
        )
        return ImageResolution(status=ImageStatus.UNRESOLVED, rejected=rejected)

    def cache_url(self, url: str, platform: Optional[Platform] = None) -> CacheEntry:
        """Download, verify and store a single image URL.

        Raises
        ------
        ImageFetchError
            On transport errors, non-image bodies, tiny images or blocklisted content
        """
        content = self._download(url, platform)
        fmt, width, height = self._inspect(content, url)

        reason = dimension_rejection(width, height, FilterRules.from_config(self.config, platform))
        if reason:
            raise ImageFetchError(url, reason)

        if platform is not None and platform in self.config.normalize_formats and fmt != "JPEG":
            content = self._to_jpeg(content, url)
            fmt = "JPEG"

        if ContentAddressedCache.hash_bytes(content) in self._blocked_hashes:
            raise ImageFetchError(url, "blocklisted content hash")

        try:
            return self.cache.store(content, FORMAT_EXTENSIONS.get(fmt, "jpg"))
        except OSError as exc:
            raise ImageFetchError(url, f"cache write failed: {exc}") from exc

    def _download(self, url: str, platform: Optional[Platform]) -> bytes:
        referer = self.referers.get(platform) if platform else None
        try:
            with self.client.stream("GET", url, headers=self.user_agents.image_headers(referer)) as response:
                if response.status_code != 200:
                    raise ImageFetchError(url, f"http {response.status_code}")
                content_type = response.headers.get("content-type", "").lower()
                if content_type.startswith(("text/", "application/json")):
                    raise ImageFetchError(url, f"non-image content-type {content_type}")
                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.config.max_bytes:
                    raise ImageFetchError(url, f"too many bytes ({declared})")
                buf = bytearray()
                for chunk in response.iter_bytes():
                    buf.extend(chunk)
                    if len(buf) > self.config.max_bytes:
                        raise ImageFetchError(url, f"too many bytes (> {self.config.max_bytes})")
        except httpx.TimeoutException as exc:
            raise ImageFetchError(url, "timeout") from exc
        except httpx.HTTPError as exc:
            raise ImageFetchError(url, f"transport error: {exc}") from exc
        except (httpx.InvalidURL, ValueError) as exc:
            raise ImageFetchError(url, f"invalid url: {exc}") from exc

        content = bytes(buf)
        if len(content) < self.config.min_bytes:
            raise ImageFetchError(url, f"too few bytes ({len(content)})")
        return content

    @staticmethod
    def _inspect(content: bytes, url: str) -> Tuple[str, int, int]:
        try:
            with Image.open(io.BytesIO(content)) as img:
                fmt = img.format or ""
                width, height = img.size
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
            raise ImageFetchError(url, f"undecodable image: {exc}") from exc
        if fmt not in FORMAT_EXTENSIONS:
            raise ImageFetchError(url, f"unsupported format {fmt or 'unknown'}")
        return fmt, width, height

    @staticmethod
    def _to_jpeg(content: bytes, url: str) -> bytes:
        try:
            with Image.open(io.BytesIO(content)) as img:
                rgb = img.convert("RGB")
                out = io.BytesIO()
                rgb.save(out, format="JPEG", quality=90)
        except (OSError, ValueError) as exc:
            raise ImageFetchError(url, f"jpeg normalization failed: {exc}") from exc
        return out.getvalue()
