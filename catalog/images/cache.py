"""Content-addressed on-disk image cache."""
from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Immutable record of one stored image."""

    content_hash: str
    path: Path
    size: int
    ext: str
    public_path: str

    @property
    def filename(self) -> str:
        return f"{self.content_hash}.{self.ext}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "path": str(self.path),
            "size": self.size,
            "ext": self.ext,
            "public_path": self.public_path,
        }


class ContentAddressedCache:
    """Stores bytes as ``<sha1>.<ext>``.

    Writes go to a temp file in the same directory followed by ``os.replace``,
    so concurrent writers of the same content never expose a partial file.
    An existing entry is never rewritten.
    """

    def __init__(self, root: Union[str, Path], public_prefix: str = "/cache") -> None:
        self.root = Path(root)
        self.public_prefix = public_prefix.rstrip("/")

    @staticmethod
    def hash_bytes(content: bytes) -> str:
        return hashlib.sha1(content).hexdigest()

    def path_for(self, content_hash: str, ext: str) -> Path:
        return self.root / f"{content_hash}.{ext.lstrip('.').lower()}"

    def public_path(self, content_hash: str, ext: str) -> str:
        return f"{self.public_prefix}/{content_hash}.{ext.lstrip('.').lower()}"

    def _entry(self, content_hash: str, ext: str, size: int) -> CacheEntry:
        ext = ext.lstrip(".").lower()
        return CacheEntry(
            content_hash=content_hash,
            path=self.path_for(content_hash, ext),
            size=size,
            ext=ext,
            public_path=self.public_path(content_hash, ext),
        )

    def exists(self, content_hash: str, ext: Optional[str] = None) -> bool:
        """True if the hash is cached, under ``ext`` when given, else under any extension."""
        if ext is not None:
            return self.path_for(content_hash, ext).exists()
        return any(self.root.glob(f"{content_hash}.*"))

    def get(self, content_hash: str, ext: str) -> Optional[CacheEntry]:
        if not self.exists(content_hash, ext):
            return None
        path = self.path_for(content_hash, ext)
        return self._entry(content_hash, ext, path.stat().st_size)

    def store(self, content: bytes, ext: str) -> CacheEntry:
        """Store ``content`` and return its entry; a no-op if already cached."""
        if not content:
            raise ValueError("Refusing to cache empty content")
        content_hash = self.hash_bytes(content)
        existing = self.get(content_hash, ext)
        if existing is not None:
            LOGGER.debug("Cache hit %s", existing.filename)
            return existing

        self.root.mkdir(parents=True, exist_ok=True)
        target = self.path_for(content_hash, ext)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{content_hash}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        LOGGER.info("Cached image %s (%d bytes)", target.name, len(content))
        return self._entry(content_hash, ext, len(content))
