"""Fetch orchestration: worker pool, fetch strategies and dispatch policy."""

from .fetcher import BrowserFetcher, HttpFetcher, PageFetcher
from .orchestrator import Orchestrator

__all__ = ["BrowserFetcher", "HttpFetcher", "PageFetcher", "Orchestrator"]
