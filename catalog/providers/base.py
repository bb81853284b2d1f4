"""Provider adapter capability interface."""
from __future__ import annotations

import logging
from abc import ABC
from typing import Any, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from ..models import DetailPayload, PartialListing, Platform, Supplier
from .common import (
    PACKAGING_LABELS,
    Extractor,
    Page,
    clean,
    document_title,
    first_success,
    ld_attributes,
    ld_breadcrumbs,
    ld_images,
    ld_product,
    ld_supplier,
    ld_tiers,
    meta,
    meta_images,
    parse_moq,
    parse_price_range,
    parse_sold_count,
    parse_tier_qty,
    regex_text,
    select_text,
    text_attributes,
    text_tiers,
)

LOGGER = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 5000

DEFAULT_TITLE_CHAIN: Tuple[Extractor, ...] = (
    meta("og:title"),
    ld_product("name"),
    select_text("h1"),
)
DEFAULT_PRICE_CHAIN: Tuple[Extractor, ...] = (
    select_text('[itemprop="price"]', 'meta[property="product:price:amount"]'),
    regex_text(r"((?:US\$|\$|USD|RMB|CNY|INR|Rs\.?|₹|¥|￥)\s*\d[\d,]*(?:\.\d+)?(?:\s*[-~]\s*(?:US\$|\$|₹|¥)?\s*\d[\d,]*(?:\.\d+)?)?)"),
)
DEFAULT_MOQ_CHAIN: Tuple[Extractor, ...] = (
    regex_text(r"(\d[\d,]*\s*[A-Za-z]*\s*\(MOQ\))"),
    regex_text(r"(Min(?:imum)?\.?\s*Order(?:\s*Quantity)?\s*[:：]?\s*\d[\d,]*\s*[A-Za-z]*)"),
)
DEFAULT_DESCRIPTION_CHAIN: Tuple[Extractor, ...] = (
    meta("description", "og:description"),
    ld_product("description"),
)
DEFAULT_CATEGORY_CHAIN: Tuple[Extractor, ...] = (ld_breadcrumbs,)
DEFAULT_IMAGE_CHAIN: Tuple[Extractor, ...] = (ld_images, meta_images)
DEFAULT_ATTRIBUTE_CHAIN: Tuple[Extractor, ...] = (ld_attributes, text_attributes)
DEFAULT_TIER_CHAIN: Tuple[Extractor, ...] = (ld_tiers, text_tiers)
DEFAULT_SUPPLIER_CHAIN: Tuple[Extractor, ...] = (ld_supplier,)
DEFAULT_SOLD_CHAIN: Tuple[Extractor, ...] = (regex_text(r"(\d[\d,.]*\s*(?:sold|orders))"),)


class ProviderAdapter(ABC):
    """HTML → record extraction for one marketplace.

    Subclasses declare ordered extractor chains per field; the first extractor
    returning a non-empty value wins. Public methods never raise on malformed
    input, they return records with empty fields instead.
    """

    platform: Platform
    hosts: Tuple[str, ...] = ()
    title_suffixes: Tuple[str, ...] = ()

    # Summary chains
    title_chain: Sequence[Extractor] = DEFAULT_TITLE_CHAIN
    price_chain: Sequence[Extractor] = DEFAULT_PRICE_CHAIN
    moq_chain: Sequence[Extractor] = DEFAULT_MOQ_CHAIN
    store_chain: Sequence[Extractor] = ()
    description_chain: Sequence[Extractor] = DEFAULT_DESCRIPTION_CHAIN
    category_chain: Sequence[Extractor] = DEFAULT_CATEGORY_CHAIN
    image_chain: Sequence[Extractor] = DEFAULT_IMAGE_CHAIN

    # Detail chains
    attribute_chain: Sequence[Extractor] = DEFAULT_ATTRIBUTE_CHAIN
    tier_chain: Sequence[Extractor] = DEFAULT_TIER_CHAIN
    gallery_chain: Sequence[Extractor] = DEFAULT_IMAGE_CHAIN
    supplier_chain: Sequence[Extractor] = DEFAULT_SUPPLIER_CHAIN
    detail_description_chain: Sequence[Extractor] = DEFAULT_DESCRIPTION_CHAIN
    sold_chain: Sequence[Extractor] = DEFAULT_SOLD_CHAIN

    # Plain HTML with fewer attributes than this triggers a rendered fetch.
    min_sufficient_attributes: int = 1

    def matches(self, url: str) -> bool:
        try:
            host = (urlsplit(url).hostname or "").lower()
        except ValueError:
            return False
        return any(host == h or host.endswith("." + h) for h in self.hosts)

    def extract_summary(self, html: Any, url: Optional[str] = None) -> PartialListing:
        """Parse summary fields from a page; never raises."""
        try:
            return self._summary(Page(html, url))
        except Exception as exc:
            LOGGER.warning("%s summary extraction failed: %s", self.platform.value, exc)
            return PartialListing()

    def extract_detail(self, html: Any, url: Optional[str] = None) -> DetailPayload:
        """Parse a detail payload from a page; never raises."""
        try:
            return self._detail(Page(html, url))
        except Exception as exc:
            LOGGER.warning("%s detail extraction failed: %s", self.platform.value, exc)
            return DetailPayload()

    def is_sufficient(self, html: Any) -> bool:
        """True if plain HTML already carries enough detail to skip rendering."""
        try:
            page = Page(html)
            attributes = first_success(self.attribute_chain, page) or []
            if len(attributes) >= self.min_sufficient_attributes:
                return True
            return bool(first_success(self.tier_chain, page))
        except Exception as exc:
            LOGGER.debug("%s sufficiency check failed: %s", self.platform.value, exc)
            return False

    def _title(self, page: Page) -> str:
        title = first_success(self.title_chain, page) or document_title()(page) or ""
        for suffix in self.title_suffixes:
            idx = title.lower().find(suffix.lower())
            if idx > 0:
                title = title[:idx]
        return title.strip(" -|")

    def _moq(self, page: Page) -> Tuple[Optional[str], Optional[int]]:
        moq_raw = first_success(self.moq_chain, page)
        if not moq_raw:
            return None, None
        moq = parse_moq(moq_raw)
        if moq is None:
            qty = parse_tier_qty(moq_raw)
            moq = qty[0] if qty else None
        return moq_raw, moq

    def _summary(self, page: Page) -> PartialListing:
        price_raw = first_success(self.price_chain, page)
        price_min, price_max, currency = parse_price_range(price_raw)
        moq_raw, moq = self._moq(page)
        store = first_success(self.store_chain, page) if self.store_chain else None
        if not store:
            supplier = first_success(self.supplier_chain, page)
            store = supplier.name if isinstance(supplier, Supplier) else None
        description = first_success(self.description_chain, page) or ""
        return PartialListing(
            title=self._title(page),
            image_candidates=first_success(self.image_chain, page) or [],
            price_raw=price_raw,
            price_min=price_min,
            price_max=price_max,
            currency=currency or self.default_currency(),
            moq_raw=moq_raw,
            moq=moq,
            store_name=store,
            description=description[:MAX_DESCRIPTION_LENGTH],
            categories=first_success(self.category_chain, page) or [],
        )

    def _detail(self, page: Page) -> DetailPayload:
        attributes: List[Tuple[str, str]] = first_success(self.attribute_chain, page) or []
        tiers = first_success(self.tier_chain, page) or []
        moq_text, moq = self._moq(page)
        if moq is None and tiers:
            moq = tiers[0].min_qty
        description = clean(first_success(self.detail_description_chain, page))
        sold_text = first_success(self.sold_chain, page)
        return DetailPayload(
            attributes=attributes,
            price_tiers=tiers,
            gallery=first_success(self.gallery_chain, page) or [],
            supplier=first_success(self.supplier_chain, page) or Supplier(),
            description=description[:MAX_DESCRIPTION_LENGTH],
            packaging=[pair for pair in attributes if pair[0].lower() in PACKAGING_LABELS],
            moq=moq,
            moq_text=moq_text,
            sold_count=parse_sold_count(sold_text) if sold_text else None,
        )

    def default_currency(self) -> Optional[str]:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} platform={self.platform.value}>"
