"""Provider adapters keyed by platform."""
from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional, Type, TypeVar

from ..models import Platform

if TYPE_CHECKING:
    from .base import ProviderAdapter

A = TypeVar("A", bound="Type[ProviderAdapter]")

_REGISTRY: Dict[Platform, "ProviderAdapter"] = {}


def register(adapter_cls: A) -> A:
    """Class decorator: instantiate the adapter and register it for its platform."""
    _REGISTRY[adapter_cls.platform] = adapter_cls()
    return adapter_cls


def get_adapter(platform: Platform) -> "ProviderAdapter":
    try:
        return _REGISTRY[Platform(platform)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"No adapter registered for platform: {platform}") from exc


def adapter_for_url(url: str) -> Optional["ProviderAdapter"]:
    for adapter in _REGISTRY.values():
        if adapter.matches(url):
            return adapter
    return None


def registered_platforms() -> List[Platform]:
    return list(_REGISTRY)


# Imported for their @register side effect.
from . import alibaba, global_sources, indiamart, made_in_china  # noqa: E402,F401

__all__ = ["register", "get_adapter", "adapter_for_url", "registered_platforms"]
