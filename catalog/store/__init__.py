"""Listing persistence: canonical keys, duplicate scoring and store backends."""
from __future__ import annotations

import logging

from ..config import PipelineConfig
from ..errors import StoreError
from .base import CandidateQuery, ListingStore, incoming_wins, score
from .canonical import canonical_key, canonicalize_url
from .memory import InMemoryListingStore

LOGGER = logging.getLogger(__name__)


def create_store(config: PipelineConfig, *, persistent: bool = False) -> ListingStore:
    """Return the PostgreSQL store when a DSN is configured, else an in-memory one.

    Parameters
    ----------
    config : PipelineConfig
        Loaded pipeline configuration
    persistent : bool
        Refuse the in-memory fallback; set by callers whose output is only
        meaningful against the real table (stats, dedupe, backfill, rescrape)

    Raises
    ------
    StoreError
        If ``persistent`` is set and no DSN is configured
    """
    params = config.store.tracking_params
    if config.store.dsn:
        from .postgres import PostgresListingStore

        return PostgresListingStore(config.store.dsn, tracking_params=params)
    if persistent:
        raise StoreError("PG_DSN is not set; this operation needs the PostgreSQL listing store")
    LOGGER.warning("No PG_DSN configured; using in-memory listing store")
    return InMemoryListingStore(tracking_params=params)


__all__ = [
    "CandidateQuery",
    "InMemoryListingStore",
    "ListingStore",
    "canonical_key",
    "canonicalize_url",
    "create_store",
    "incoming_wins",
    "score",
]
