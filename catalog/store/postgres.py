"""PostgreSQL listing store (psycopg2)."""
from __future__ import annotations

import logging
import os
from contextlib import closing
from typing import Any, Dict, List, Optional, Tuple

import orjson
import psycopg2
from psycopg2.extensions import connection as PGConnection
from psycopg2.extras import DictCursor, Json

from ..errors import StoreError
from ..models import DetailPayload, ImageStatus, Listing, Platform
from ..quality import DEFAULT_GOOD_THRESHOLD, QualityTier
from .base import CACHED_IMAGE_WEIGHT, SECONDS_PER_DAY, CandidateQuery, incoming_wins, score
from .canonical import canonical_key, canonicalize_url

LOGGER = logging.getLogger(__name__)

TABLE_SQL = """
CREATE TABLE IF NOT EXISTS catalog_listings (
    id BIGSERIAL PRIMARY KEY,
    platform VARCHAR(32) NOT NULL,
    url TEXT NOT NULL,
    canonical_key TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    image TEXT,
    image_status VARCHAR(16) NOT NULL DEFAULT 'pending',
    price_raw TEXT,
    price_min NUMERIC,
    price_max NUMERIC,
    currency VARCHAR(8),
    moq_raw TEXT,
    moq INTEGER,
    store_name TEXT,
    description TEXT NOT NULL DEFAULT '',
    categories JSONB NOT NULL DEFAULT '[]'::jsonb,
    terms JSONB NOT NULL DEFAULT '[]'::jsonb,
    detail JSONB,
    detail_updated_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_catalog_listings_key
    ON catalog_listings(canonical_key);
CREATE INDEX IF NOT EXISTS idx_catalog_listings_platform
    ON catalog_listings(platform, id);
"""

COLUMNS = (
    "platform",
    "url",
    "canonical_key",
    "title",
    "image",
    "image_status",
    "price_raw",
    "price_min",
    "price_max",
    "currency",
    "moq_raw",
    "moq",
    "store_name",
    "description",
    "categories",
    "terms",
    "detail",
    "detail_updated_at",
    "created_at",
    "updated_at",
)

# SQL twin of catalog.store.base.score()
SCORE_SQL = f"""(
    CASE WHEN image_status = 'cached' AND COALESCE(image, '') <> '' THEN {CACHED_IMAGE_WEIGHT} ELSE 0 END
    + EXTRACT(EPOCH FROM updated_at) / {SECONDS_PER_DAY}
    + LENGTH(COALESCE(description, '')) / 1000.0
)"""

TIER_SQL = """(
    CASE
        WHEN detail IS NULL OR detail = 'null'::jsonb THEN 'MISSING'
        WHEN jsonb_array_length(COALESCE(detail->'attributes', '[]'::jsonb)) = 0 THEN 'BAD'
        WHEN jsonb_array_length(detail->'attributes') < %(good_threshold)s THEN 'PARTIAL'
        ELSE 'GOOD'
    END
)"""


def get_db_connection(dsn: Optional[str] = None) -> PGConnection:
    """Return a psycopg2 connection using the DSN from the argument or environment."""
    dsn = dsn or os.getenv("PG_DSN")
    if not dsn:
        raise RuntimeError("PG_DSN is not set")
    return psycopg2.connect(dsn)


def _row_to_listing(row: Any) -> Listing:
    detail = row["detail"]
    if isinstance(detail, (str, bytes)):
        detail = orjson.loads(detail)
    return Listing(
        id=row["id"],
        platform=Platform(row["platform"]),
        url=row["url"],
        title=row["title"] or "",
        image=row["image"],
        image_status=ImageStatus(row["image_status"]),
        price_raw=row["price_raw"],
        price_min=float(row["price_min"]) if row["price_min"] is not None else None,
        price_max=float(row["price_max"]) if row["price_max"] is not None else None,
        currency=row["currency"],
        moq_raw=row["moq_raw"],
        moq=row["moq"],
        store_name=row["store_name"],
        description=row["description"] or "",
        categories=row["categories"] or [],
        terms=row["terms"] or [],
        detail=DetailPayload.model_validate(detail) if detail else None,
        detail_updated_at=row["detail_updated_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _params(listing: Listing, key: str) -> Dict[str, Any]:
    return {
        "platform": listing.platform.value,
        "url": listing.url,
        "canonical_key": key,
        "title": listing.title,
        "image": listing.image,
        "image_status": listing.image_status.value,
        "price_raw": listing.price_raw,
        "price_min": listing.price_min,
        "price_max": listing.price_max,
        "currency": listing.currency,
        "moq_raw": listing.moq_raw,
        "moq": listing.moq,
        "store_name": listing.store_name,
        "description": listing.description,
        "categories": Json(listing.categories),
        "terms": Json(listing.terms),
        "detail": Json(listing.detail.model_dump(mode="json")) if listing.detail else None,
        "detail_updated_at": listing.detail_updated_at,
        "created_at": listing.created_at,
        "updated_at": listing.updated_at,
    }


class PostgresListingStore:
    """Listing store on PostgreSQL.

    Each upsert runs in one transaction holding a transaction-scoped advisory
    lock on the canonical key, so concurrent upserts of one key serialize.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        tracking_params: Optional[List[str]] = None,
        ensure_schema: bool = True,
    ) -> None:
        """Initialize store.

        Parameters
        ----------
        dsn : str, optional
            PostgreSQL DSN (defaults to ``$PG_DSN``)
        tracking_params : list of str, optional
            Query parameters stripped during canonicalization
        ensure_schema : bool
            Create the table and indexes if missing
        """
        self.dsn = dsn or os.getenv("PG_DSN")
        if not self.dsn:
            raise RuntimeError("PG_DSN is not set")
        self._tracking_params = tracking_params
        if ensure_schema:
            self.ensure_schema()

    def _connect(self) -> PGConnection:
        try:
            return get_db_connection(self.dsn)
        except psycopg2.Error as exc:
            raise StoreError(f"Cannot connect to PostgreSQL: {exc}") from exc

    def ensure_schema(self) -> None:
        with closing(self._connect()) as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(TABLE_SQL)
                conn.commit()
            except psycopg2.Error as exc:
                conn.rollback()
                raise StoreError(f"Schema setup failed: {exc}") from exc
        LOGGER.info("Ensured catalog_listings table exists")

    def _key(self, platform: Platform, url: str) -> str:
        return canonical_key(platform, url, self._tracking_params)

    def upsert_listing(self, listing: Listing) -> Listing:
        incoming = listing.model_copy(deep=True)
        incoming.url = canonicalize_url(incoming.url, self._tracking_params)
        key = self._key(incoming.platform, incoming.url)

        with closing(self._connect()) as conn:
            try:
                with conn.cursor(cursor_factory=DictCursor) as cur:
                    cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))
                    cur.execute(
                        "SELECT * FROM catalog_listings WHERE canonical_key = %s FOR UPDATE",
                        (key,),
                    )
                    existing = sorted(
                        (_row_to_listing(row) for row in cur.fetchall()), key=score, reverse=True
                    )
                    stored = self._merge(cur, key, incoming, existing)
                conn.commit()
            except psycopg2.Error as exc:
                conn.rollback()
                raise StoreError(f"Upsert failed for {key}: {exc}") from exc
        return stored

    def _merge(self, cur: Any, key: str, incoming: Listing, existing: List[Listing]) -> Listing:
        params = _params(incoming, key)
        if not existing:
            columns = ", ".join(COLUMNS)
            values = ", ".join(f"%({name})s" for name in COLUMNS)
            cur.execute(
                f"INSERT INTO catalog_listings ({columns}) VALUES ({values}) RETURNING id",
                params,
            )
            incoming.id = cur.fetchone()[0]
            LOGGER.debug("Inserted listing %d (%s)", incoming.id, key)
            return incoming

        best, losers = existing[0], existing[1:]
        if losers:
            cur.execute(
                "DELETE FROM catalog_listings WHERE id = ANY(%s)",
                ([loser.id for loser in losers],),
            )
            LOGGER.info("Removed %d duplicate row(s) for %s", len(losers), key)

        if not incoming_wins(best, incoming):
            LOGGER.info("Kept existing listing %d for %s", best.id, key)
            return best

        incoming.id = best.id
        incoming.created_at = best.created_at
        params = _params(incoming, key)
        assignments = ", ".join(f"{name} = %({name})s" for name in COLUMNS if name != "created_at")
        params["id"] = best.id
        cur.execute(f"UPDATE catalog_listings SET {assignments} WHERE id = %(id)s", params)
        LOGGER.debug("Replaced listing %d with incoming record", best.id)
        return incoming

    def _query(self, sql: str, params: Any = None) -> List[Any]:
        with closing(self._connect()) as conn:
            try:
                with conn.cursor(cursor_factory=DictCursor) as cur:
                    cur.execute(sql, params)
                    rows = cur.fetchall()
                conn.commit()
            except psycopg2.Error as exc:
                conn.rollback()
                raise StoreError(f"Query failed: {exc}") from exc
        return rows

    def find_by_canonical_key(self, platform: Platform, url: str) -> Optional[Listing]:
        rows = self._query(
            f"SELECT * FROM catalog_listings WHERE canonical_key = %s ORDER BY {SCORE_SQL} DESC LIMIT 1",
            (self._key(Platform(platform), url),),
        )
        return _row_to_listing(rows[0]) if rows else None

    def get(self, listing_id: int) -> Optional[Listing]:
        rows = self._query("SELECT * FROM catalog_listings WHERE id = %s", (listing_id,))
        return _row_to_listing(rows[0]) if rows else None

    def list_listings(self, platform: Optional[Platform] = None, limit: Optional[int] = None) -> List[Listing]:
        rows = self._query(
            """
            SELECT * FROM catalog_listings
            WHERE (%(platform)s IS NULL OR platform = %(platform)s)
            ORDER BY id
            LIMIT %(limit)s
            """,
            {"platform": platform.value if platform else None, "limit": limit},
        )
        return [_row_to_listing(row) for row in rows]

    def count_by_platform_and_tier(
        self, good_threshold: int = DEFAULT_GOOD_THRESHOLD
    ) -> Dict[Tuple[Platform, QualityTier], int]:
        rows = self._query(
            f"""
            SELECT platform, {TIER_SQL} AS tier, COUNT(*) AS total
            FROM catalog_listings
            GROUP BY 1, 2
            """,
            {"good_threshold": good_threshold},
        )
        return {(Platform(row["platform"]), QualityTier(row["tier"])): row["total"] for row in rows}

    def refresh_candidates(self, query: CandidateQuery) -> List[Listing]:
        rows = self._query(
            f"""
            SELECT * FROM catalog_listings
            WHERE id > %(after_id)s
              AND {TIER_SQL} = %(tier)s
              AND (%(platform)s IS NULL OR platform = %(platform)s)
              AND (%(refreshed_since)s IS NULL OR detail_updated_at IS NULL
                   OR detail_updated_at < %(refreshed_since)s)
              AND (%(tier)s <> 'GOOD' OR %(stale_before)s IS NULL
                   OR detail_updated_at IS NULL OR detail_updated_at < %(stale_before)s)
            ORDER BY id
            LIMIT %(limit)s
            """,
            {
                "after_id": query.after_id,
                "tier": query.tier.value,
                "platform": query.platform.value if query.platform else None,
                "refreshed_since": query.refreshed_since,
                "stale_before": query.stale_before,
                "limit": query.limit,
                "good_threshold": query.good_threshold,
            },
        )
        return [_row_to_listing(row) for row in rows]

    def deduplicate(self) -> int:
        """Recompute canonical keys, then keep the best-scoring row per key."""
        with closing(self._connect()) as conn:
            try:
                with conn.cursor(cursor_factory=DictCursor) as cur:
                    cur.execute("SELECT id, platform, url, canonical_key FROM catalog_listings")
                    updates = []
                    for row in cur.fetchall():
                        key = self._key(Platform(row["platform"]), row["url"])
                        if key != row["canonical_key"]:
                            updates.append((key, row["id"]))
                    if updates:
                        cur.executemany(
                            "UPDATE catalog_listings SET canonical_key = %s WHERE id = %s",
                            updates,
                        )
                        LOGGER.info("Re-keyed %d listing(s)", len(updates))
                    cur.execute(
                        f"""
                        WITH ranked AS (
                            SELECT
                                id,
                                ROW_NUMBER() OVER (
                                    PARTITION BY canonical_key
                                    ORDER BY {SCORE_SQL} DESC, id ASC
                                ) AS rn
                            FROM catalog_listings
                        )
                        DELETE FROM catalog_listings
                        WHERE id IN (SELECT id FROM ranked WHERE rn > 1)
                        """
                    )
                    deleted = cur.rowcount
                conn.commit()
            except psycopg2.Error as exc:
                conn.rollback()
                raise StoreError(f"Deduplication failed: {exc}") from exc
        LOGGER.info("Removed %d duplicate rows from catalog_listings", deleted)
        return deleted
