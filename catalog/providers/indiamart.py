"""IndiaMART product pages."""
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
    ld_breadcrumbs,
    regex_images,
    regex_text,
    select_images,
    select_text,
    supplier_block,
    table_attributes,
)


@register
class IndiaMartAdapter(ProviderAdapter):
    platform = Platform.INDIAMART
    hosts = ("indiamart.com",)
    title_suffixes = (" at Rs ", " at Best Price", " - IndiaMART")

    title_chain = (select_text(".pdpbox h1", "h1.bo", ".pdp-title h1"),) + DEFAULT_TITLE_CHAIN
    price_chain = (
        select_text(".pdpbox .price-unit", ".pdp_price", ".prc", ".price-unit"),
    ) + DEFAULT_PRICE_CHAIN
    moq_chain = (
        select_text(".pdpbox .moq", ".pdp-moq"),
        regex_text(r"(Minimum Order Quantity\s*[:：]?\s*\d[\d,]*\s*[A-Za-z]*)"),
    ) + DEFAULT_MOQ_CHAIN
    store_chain = (
        select_text(".seller-info .cmp-nm", ".cmp-detail .cmp-nm", ".seller-info a", ".cmp-detail a", ".companyname a"),
    )
    category_chain = (
        ld_breadcrumbs,
        breadcrumbs(".brdcrmb a", ".breadcrumb a"),
    )
    image_chain = (select_images(".pdpbox img", ".pdp-gallery img", "#imgContainer img"),) + DEFAULT_IMAGE_CHAIN

    attribute_chain = (
        table_attributes(".pdpbox .dtlsec1", ".specification", ".specs", ".pdp-specification", "table.dtl-tbl"),
    ) + DEFAULT_ATTRIBUTE_CHAIN
    tier_chain = DEFAULT_TIER_CHAIN
    gallery_chain = (
        select_images(".pdp-gallery img", "#imgContainer img", ".pdpbox img"),
        regex_images(r"imimg\.com"),
    ) + DEFAULT_IMAGE_CHAIN
    supplier_chain = (
        supplier_block(
            [".seller-info .cmp-nm", ".cmp-detail .cmp-nm", ".seller-info a", ".cmp-detail a"],
            [".seller-info img", ".cmp-detail img"],
        ),
    ) + DEFAULT_SUPPLIER_CHAIN
    detail_description_chain = (
        select_text(".product-desc", "#prodDesc", ".pdp-desc"),
    ) + DEFAULT_DESCRIPTION_CHAIN

    def default_currency(self) -> str:
        return "INR"
