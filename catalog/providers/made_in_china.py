"""Made-in-China.com detail pages."""
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
    ladder_tiers,
    ld_breadcrumbs,
    regex_images,
    select_images,
    select_text,
    supplier_block,
    table_attributes,
)


@register
class MadeInChinaAdapter(ProviderAdapter):
    platform = Platform.MADE_IN_CHINA
    hosts = ("made-in-china.com",)
    title_suffixes = (" - China ", " - Made-in-China.com")

    title_chain = (
        select_text(".sr-proMainInfo-baseInfoH1 h1", "h1.sr-proMainInfo-baseInfoH1", ".sr-proMainInfo-baseInfo-name h1"),
    ) + DEFAULT_TITLE_CHAIN
    price_chain = (
        select_text(".sr-proMainInfo-baseInfo-price", ".swiper-money-container", ".only-one-priceNum", ".price-info"),
    ) + DEFAULT_PRICE_CHAIN
    moq_chain = (
        select_text(".sr-proMainInfo-baseInfo-moq", ".only-one-priceNum-moq", ".swiper-unit-container"),
    ) + DEFAULT_MOQ_CHAIN
    store_chain = (
        select_text(".company-name a", ".com-name a", ".sr-com-info .title a", ".company-name"),
    )
    category_chain = (
        ld_breadcrumbs,
        breadcrumbs(".sr-crumb a", ".crumb a", ".breadcrumb a"),
    )
    image_chain = (
        select_images(".sr-proMainInfo-slide-picItem img", ".sr-proMainInfo-slide img", ".J-pic-list img"),
    ) + DEFAULT_IMAGE_CHAIN

    attribute_chain = (
        table_attributes(".sr-proMainInfo-attr", ".sr-proParameter", ".sr-proSpecification", ".basic-info-list"),
    ) + DEFAULT_ATTRIBUTE_CHAIN
    tier_chain = (
        ladder_tiers(".price-list li", "", ".price, span"),
        ladder_tiers(".ladder-price li", "", ".price, span"),
        ladder_tiers(".tier-item", "", ".price, span"),
        ladder_tiers(
            ".swiper-container-div .swiper-slide-div, .swiper-container .swiper-slide",
            ".swiper-unit-container",
            ".swiper-money-container",
        ),
    ) + DEFAULT_TIER_CHAIN
    gallery_chain = (
        select_images(
            ".sr-proMainInfo-slide-picItem img",
            ".sr-proMainInfo-slide img",
            ".J-pic-list img",
            ".pic-list img",
        ),
        regex_images(r"micstatic\.com|image\.made-in-china\.com"),
    ) + DEFAULT_IMAGE_CHAIN
    supplier_chain = (
        supplier_block(
            [".company-name a", ".com-name a", ".sr-com-info .title a", ".company-name"],
            [".com-logo img", ".company-logo img"],
        ),
    ) + DEFAULT_SUPPLIER_CHAIN
    detail_description_chain = (
        select_text(".sr-proDesc", "#J-detail", ".rich-text"),
    ) + DEFAULT_DESCRIPTION_CHAIN

    min_sufficient_attributes = 3

    def default_currency(self) -> str:
        return "USD"
