"""Alibaba.com detail pages."""
from __future__ import annotations

from ..models import Platform
from . import register
from .base import (
    DEFAULT_ATTRIBUTE_CHAIN,
    DEFAULT_DESCRIPTION_CHAIN,
    DEFAULT_IMAGE_CHAIN,
    DEFAULT_MOQ_CHAIN,
    DEFAULT_PRICE_CHAIN,
    DEFAULT_SUPPLIER_CHAIN,
    DEFAULT_TIER_CHAIN,
    DEFAULT_TITLE_CHAIN,
    ProviderAdapter,
)
from .common import (
    breadcrumbs,
    labelled_attributes,
    ladder_tiers,
    ld_breadcrumbs,
    regex_images,
    select_images,
    select_text,
    supplier_block,
    table_attributes,
)

# Product photos live under /kf/ on the alicdn CDN; UI assets do not.
ALICDN_PRODUCT_IMAGES = r"alicdn\.com/(?:@\w+/)?kf/"


@register
class AlibabaAdapter(ProviderAdapter):
    platform = Platform.ALIBABA
    hosts = ("alibaba.com",)
    title_suffixes = (" - Buy ", " - Alibaba.com", "| Alibaba.com")

    title_chain = (
        select_text('[data-testid="product-title"]', ".product-title-container h1", ".module-pdp-title h1"),
    ) + DEFAULT_TITLE_CHAIN
    price_chain = (
        select_text('[data-testid="module_price"]', ".module_price", '[data-testid*="ladder-price"]', ".product-price"),
    ) + DEFAULT_PRICE_CHAIN
    moq_chain = (
        select_text("td.only-one-priceNum-price", ".only-one-priceNum-price", '[data-testid="min-order"]'),
    ) + DEFAULT_MOQ_CHAIN
    store_chain = (
        select_text('[data-testid="company-name"]', ".company-name a", ".company-name"),
    )
    category_chain = (
        ld_breadcrumbs,
        breadcrumbs(".detail-breadcrumb a", '[data-testid="breadcrumb"] a', ".breadcrumb a"),
    )
    image_chain = (
        select_images('[data-testid="media-image"] img', ".main-image img", ".image-list img"),
    ) + DEFAULT_IMAGE_CHAIN

    attribute_chain = (
        labelled_attributes(".attribute-item", ".left", ".right"),
        labelled_attributes(".do-entry-item", ".attr-name", ".attr-value"),
        table_attributes('[data-testid="module-attribute"]', ".module_attribute", ".attribute-info", ".do-entry-list"),
    ) + DEFAULT_ATTRIBUTE_CHAIN
    tier_chain = (
        ladder_tiers('[data-testid="ladder-price"] .price-item', "div:nth-of-type(1)", "div:nth-of-type(2) span"),
        ladder_tiers(".module_price .price-item", "div", "span"),
    ) + DEFAULT_TIER_CHAIN
    gallery_chain = (
        select_images(
            '[data-testid="media-image"] img',
            ".detail-next-slick img",
            ".main-image img",
            ".image-list img",
            ".thumb-list img",
        ),
        regex_images(ALICDN_PRODUCT_IMAGES),
    ) + DEFAULT_IMAGE_CHAIN
    supplier_chain = (
        supplier_block(
            ['[data-testid="company-name"]', ".company-name a", ".company-name"],
            [".company-logo img"],
        ),
    ) + DEFAULT_SUPPLIER_CHAIN
    detail_description_chain = (
        select_text('[data-testid="product-description"]', ".module_description", "#product-description"),
    ) + DEFAULT_DESCRIPTION_CHAIN

    min_sufficient_attributes = 3

    def default_currency(self) -> str:
        return "USD"
