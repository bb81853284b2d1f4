"""Global Sources product pages."""
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


@register
class GlobalSourcesAdapter(ProviderAdapter):
    platform = Platform.GLOBAL_SOURCES
    hosts = ("globalsources.com",)
    title_suffixes = (" | Global Sources", " - Global Sources")

    title_chain = (select_text("h1.product-name", ".mod-detail-title h1"),) + DEFAULT_TITLE_CHAIN
    price_chain = (
        select_text(".product-price", ".mod-detail-price", ".price-info"),
    ) + DEFAULT_PRICE_CHAIN
    moq_chain = (select_text(".min-order", ".moq"),) + DEFAULT_MOQ_CHAIN
    store_chain = (select_text(".supplier-name a", ".company-name a", ".supplier-name"),)
    category_chain = (
        ld_breadcrumbs,
        breadcrumbs(".breadcrumb a", ".crumbs a"),
    )
    image_chain = (select_images(".product-image img", ".mod-detail-gallery img"),) + DEFAULT_IMAGE_CHAIN

    attribute_chain = (
        labelled_attributes(".spec-item", ".spec-name", ".spec-value"),
        table_attributes(".product-spec", ".spec-list", ".mod-detail-spec", ".key-attributes"),
    ) + DEFAULT_ATTRIBUTE_CHAIN
    tier_chain = (
        ladder_tiers(".price-list .price-item", ".qty, .num", ".price"),
    ) + DEFAULT_TIER_CHAIN
    gallery_chain = (
        select_images(".product-image img", ".mod-detail-gallery img", ".swiper-slide img"),
        regex_images(r"globalsources\.com/.*?/(?:image|img|photo)|s\.globalsources\.com"),
    ) + DEFAULT_IMAGE_CHAIN
    supplier_chain = (
        supplier_block(
            [".supplier-name a", ".company-name a", ".supplier-name"],
            [".supplier-logo img"],
        ),
    ) + DEFAULT_SUPPLIER_CHAIN
    detail_description_chain = (
        select_text(".product-description", ".mod-detail-desc"),
    ) + DEFAULT_DESCRIPTION_CHAIN

    def default_currency(self) -> str:
        return "USD"
