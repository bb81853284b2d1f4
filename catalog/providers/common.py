"""Shared parsing primitives for provider adapters.

Every extractor here is a pure function ``Page -> value``. Adapters compose
them into ordered fallback chains evaluated with :func:`first_success`.
"""
from __future__ import annotations

import logging
import re
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import orjson
from bs4 import BeautifulSoup, Tag

from ..models import PriceTier, Supplier

LOGGER = logging.getLogger(__name__)

Extractor = Callable[["Page"], Any]

MAX_LABEL_LENGTH = 80
MAX_VALUE_LENGTH = 500
MAX_TEXT_LINES = 2000

WHITESPACE_RE = re.compile(r"\s+")
NUMBER_RE = re.compile(r"\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?")
PRICE_TEXT_RE = re.compile(r"(US\$|\$|USD|RMB|CNY|INR|Rs\.?|₹|¥|￥|€|£)\s*\d{1,6}(?:[.,]\d{1,3})*")
TIER_RANGE_RE = re.compile(r"^(\d{1,7}(?:,\d{3})*)\s*[-~–]\s*(\d{1,7}(?:,\d{3})*)")
TIER_GTE_RE = re.compile(r"^(?:≥|>=|>\s*=?)\s*(\d{1,7}(?:,\d{3})*)")
TIER_PLUS_RE = re.compile(r"^(\d{1,7}(?:,\d{3})*)\s*\+")
TIER_BARE_RE = re.compile(r"^(\d{1,7}(?:,\d{3})*)\b")
QTY_UNITS = r"(?:pieces?|pcs|sets?|units?|bags?|lots?|pairs?|boxes?|cartons?|rolls?|meters?|kgs?|kilograms?|tons?|square meters?)"
MOQ_PATTERNS = [
    re.compile(r"(\d{1,7}(?:,\d{3})*)\s*" + QTY_UNITS + r"?\s*\(MOQ\)", re.IGNORECASE),
    re.compile(r"min(?:imum)?\.?\s*order(?:\s*quantity)?[^\d]{0,30}(\d{1,7}(?:,\d{3})*)", re.IGNORECASE),
    re.compile(r"\bMOQ\b[^\d]{0,15}(\d{1,7}(?:,\d{3})*)", re.IGNORECASE),
]
SOLD_RE = re.compile(r"(\d[\d,.]*?)\s*(?:sold|orders)\b", re.IGNORECASE)
IMAGE_URL_RE = re.compile(r"(?:https?:)?//[^\s\"'<>()]+?\.(?:jpe?g|png|webp)(?:_[\w.]+)?", re.IGNORECASE)

CURRENCY_MARKERS: Sequence[Tuple[str, str]] = (
    ("US$", "USD"),
    ("USD", "USD"),
    ("₹", "INR"),
    ("INR", "INR"),
    ("Rs", "INR"),
    ("RMB", "CNY"),
    ("CNY", "CNY"),
    ("¥", "CNY"),
    ("￥", "CNY"),
    ("€", "EUR"),
    ("EUR", "EUR"),
    ("£", "GBP"),
    ("$", "USD"),
)

# Labels that B2B detail pages print as "Label: value" in running text.
KNOWN_ATTRIBUTE_LABELS = {
    "brand",
    "brand name",
    "model",
    "model number",
    "model no.",
    "place of origin",
    "origin",
    "material",
    "color",
    "colour",
    "size",
    "dimensions",
    "weight",
    "capacity",
    "power",
    "voltage",
    "usage",
    "application",
    "feature",
    "style",
    "type",
    "shape",
    "certification",
    "warranty",
    "customized",
    "logo",
    "oem",
    "packaging details",
    "supply ability",
    "port",
    "lead time",
    "delivery time",
    "payment terms",
    "hs code",
    "trademark",
    "specification",
    "transport package",
    "production capacity",
    "product type",
    "finish",
    "pattern",
    "thickness",
    "grade",
    "standard",
}

PACKAGING_LABELS = {
    "packaging details",
    "packaging",
    "package",
    "transport package",
    "selling units",
    "single package size",
    "single gross weight",
    "package size",
    "gross weight",
    "port",
    "lead time",
}


def clean(text: Any) -> str:
    """Collapse whitespace; non-strings become ''."""
    if not isinstance(text, str):
        return ""
    return WHITESPACE_RE.sub(" ", text).strip()


def coerce_html(html: Any) -> str:
    if html is None:
        return ""
    if isinstance(html, bytes):
        return html.decode("utf-8", errors="replace")
    if isinstance(html, str):
        return html
    return str(html)


def _parse_soup(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception as exc:  # lxml rejects some control characters
        LOGGER.debug("lxml failed (%s), falling back to html.parser", exc)
        return BeautifulSoup(html, "html.parser")


def _flatten_ld(data: Any, out: List[Dict[str, Any]]) -> None:
    if isinstance(data, list):
        for item in data:
            _flatten_ld(item, out)
    elif isinstance(data, dict):
        out.append(data)
        graph = data.get("@graph")
        if graph is not None:
            _flatten_ld(graph, out)


class Page:
    """A parsed HTML document shared by all extractors of one adapter call."""

    def __init__(self, html: Any, base_url: Optional[str] = None) -> None:
        self.html = coerce_html(html)
        self.base_url = base_url or ""
        self.soup = _parse_soup(self.html)

    @cached_property
    def lines(self) -> List[str]:
        body = self.soup.body or self.soup
        lines = (clean(line) for line in body.get_text("\n").splitlines())
        return [line for line in lines if line][:MAX_TEXT_LINES]

    @cached_property
    def text(self) -> str:
        return " ".join(self.lines)

    @cached_property
    def json_ld(self) -> List[Dict[str, Any]]:
        nodes: List[Dict[str, Any]] = []
        for script in self.soup.select('script[type="application/ld+json"]'):
            raw = script.string or script.get_text() or ""
            try:
                data = orjson.loads(raw.strip())
            except orjson.JSONDecodeError:
                continue
            _flatten_ld(data, nodes)
        return nodes

    def ld_nodes(self, ld_type: str) -> List[Dict[str, Any]]:
        found = []
        for node in self.json_ld:
            kind = node.get("@type")
            if kind == ld_type or (isinstance(kind, list) and ld_type in kind):
                found.append(node)
        return found

    @cached_property
    def product_node(self) -> Dict[str, Any]:
        nodes = self.ld_nodes("Product")
        return nodes[0] if nodes else {}

    def absolute(self, url: Any) -> str:
        return absolutize(url, self.base_url)


def absolutize(url: Any, base: str = "") -> str:
    """Make image/page URLs absolute; protocol-relative URLs get https."""
    value = clean(url)
    if not value or value.startswith("data:"):
        return ""
    if value.startswith("//"):
        return "https:" + value
    if value.startswith(("http://", "https://")):
        return value
    if base:
        return urljoin(base, value)
    return ""


def _name(extractor: Callable[..., Any]) -> str:
    return getattr(extractor, "__name__", repr(extractor))


def _named(name: str) -> Callable[[Extractor], Extractor]:
    def decorate(fn: Extractor) -> Extractor:
        fn.__name__ = name
        return fn

    return decorate


def is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) > 0
    if isinstance(value, Supplier):
        return bool(value.name)
    return True


def first_success(chain: Iterable[Extractor], page: Page) -> Any:
    """Return the first non-empty extractor result, or None.

    A raising extractor is logged at DEBUG and skipped.
    """
    for extractor in chain:
        try:
            value = extractor(page)
        except Exception as exc:
            LOGGER.debug("Extractor %s failed: %s", _name(extractor), exc)
            continue
        if is_present(value):
            return value
    return None


# ---------------------------------------------------------------------------
# Extractor factories
# ---------------------------------------------------------------------------


def select_text(*selectors: str) -> Extractor:
    """Text of the first element matching any selector."""

    @_named(f"select_text{selectors}")
    def extract(page: Page) -> str:
        for selector in selectors:
            node = page.soup.select_one(selector)
            if node is not None:
                text = clean(node.get("content") if node.name == "meta" else node.get_text(" "))
                if text:
                    return text
        return ""

    return extract


def meta(*names: str) -> Extractor:
    """``content`` of the first matching ``<meta property|name|itemprop>``."""

    @_named(f"meta{names}")
    def extract(page: Page) -> str:
        for name in names:
            for attr in ("property", "name", "itemprop"):
                node = page.soup.find("meta", attrs={attr: name})
                if node is not None and clean(node.get("content")):
                    return clean(node.get("content"))
        return ""

    return extract


def ld_product(field_name: str) -> Extractor:
    """A scalar field of the JSON-LD Product node."""

    @_named(f"ld_product({field_name})")
    def extract(page: Page) -> str:
        value = page.product_node.get(field_name)
        if isinstance(value, list):
            value = value[0] if value else ""
        if isinstance(value, dict):
            value = value.get("name") or value.get("@id") or ""
        return clean(value) if isinstance(value, str) else ""

    return extract


def regex_text(pattern: str, flags: int = re.IGNORECASE) -> Extractor:
    """First capture group of ``pattern`` over visible text."""
    compiled = re.compile(pattern, flags)

    @_named(f"regex_text({pattern})")
    def extract(page: Page) -> str:
        match = compiled.search(page.text)
        if not match:
            return ""
        return clean(match.group(1) if compiled.groups else match.group(0))

    return extract


def document_title(suffixes: Sequence[str] = ()) -> Extractor:
    """``<title>`` with marketplace suffixes removed."""

    @_named("document_title")
    def extract(page: Page) -> str:
        node = page.soup.find("title")
        title = clean(node.get_text()) if node is not None else ""
        for suffix in suffixes:
            idx = title.lower().find(suffix.lower())
            if idx > 0:
                title = title[:idx]
        return title.strip(" -|")

    return extract


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------


def _to_int(raw: str) -> Optional[int]:
    try:
        return int(raw.replace(",", ""))
    except (AttributeError, ValueError):
        return None


def parse_tier_qty(label: Any) -> Optional[Tuple[int, Optional[int]]]:
    """Parse quantity labels such as ``10 - 99 pieces``, ``≥ 1000``, ``1,000+``, ``999 Sets``.

    Returns
    -------
    tuple or None
        ``(min_qty, max_qty)`` with ``max_qty`` None for open-ended tiers
    """
    text = clean(label)
    if not text:
        return None
    match = TIER_RANGE_RE.match(text)
    if match:
        low, high = _to_int(match.group(1)), _to_int(match.group(2))
        if low is not None:
            return low, high
    for pattern in (TIER_GTE_RE, TIER_PLUS_RE, TIER_BARE_RE):
        match = pattern.match(text)
        if match:
            low = _to_int(match.group(1))
            if low is not None:
                return low, None
    return None


def detect_currency(text: Any) -> Optional[str]:
    value = clean(text)
    if not value:
        return None
    for marker, code in CURRENCY_MARKERS:
        if marker in value:
            return code
    return None


def parse_price_range(text: Any) -> Tuple[Optional[float], Optional[float], Optional[str]]:
    """Extract ``(min, max, currency)`` from a price string like ``US$ 1.20 - 3.50``."""
    value = clean(text)
    numbers = []
    for raw in NUMBER_RE.findall(value)[:2]:
        try:
            numbers.append(float(raw.replace(",", "")))
        except ValueError:
            continue
    if not numbers:
        return None, None, detect_currency(value)
    return min(numbers), max(numbers), detect_currency(value)


def parse_moq(text: Any) -> Optional[int]:
    value = clean(text)
    for pattern in MOQ_PATTERNS:
        match = pattern.search(value)
        if match:
            qty = _to_int(match.group(1))
            if qty and qty > 0:
                return qty
    return None


def parse_sold_count(text: Any) -> Optional[int]:
    match = SOLD_RE.search(clean(text))
    if not match:
        return None
    return _to_int(match.group(1).replace(".", ""))


def normalize_tiers(tiers: Iterable[PriceTier]) -> List[PriceTier]:
    """Drop duplicate minimum quantities and sort ascending."""
    by_min: Dict[int, PriceTier] = {}
    for tier in tiers:
        if tier.min_qty is None or not tier.price_text:
            continue
        by_min.setdefault(tier.min_qty, tier)
    return [by_min[key] for key in sorted(by_min)]


def dedupe_pairs(pairs: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    seen = set()
    out: List[Tuple[str, str]] = []
    for label, value in pairs:
        label = clean(label).rstrip(":：").strip()
        value = clean(value)
        if not label or not value:
            continue
        if len(label) > MAX_LABEL_LENGTH or len(value) > MAX_VALUE_LENGTH:
            continue
        if label.lower() == value.lower():
            continue
        key = label.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append((label, value))
    return out


# ---------------------------------------------------------------------------
# Attribute extractors
# ---------------------------------------------------------------------------


def _pairs_from_container(container: Tag) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for row in container.select("tr"):
        cells = row.find_all(["th", "td"], recursive=False)
        # Attribute tables are often laid out as label/value/label/value.
        for idx in range(0, len(cells) - 1, 2):
            pairs.append((cells[idx].get_text(" "), cells[idx + 1].get_text(" ")))
    for dl in container.select("dl"):
        for dt in dl.find_all("dt"):
            dd = dt.find_next_sibling("dd")
            if dd is not None:
                pairs.append((dt.get_text(" "), dd.get_text(" ")))
    if not pairs:
        for item in container.select("li"):
            text = clean(item.get_text(" "))
            if ":" in text or "：" in text:
                label, _, value = re.split(r"([:：])", text, maxsplit=1)
                pairs.append((label, value))
    return pairs


def table_attributes(*selectors: str) -> Extractor:
    """(label, value) pairs from tables, definition lists or ``Label: value`` items."""

    @_named(f"table_attributes{selectors}")
    def extract(page: Page) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for selector in selectors:
            for container in page.soup.select(selector):
                pairs.extend(_pairs_from_container(container))
        return dedupe_pairs(pairs)

    return extract


def labelled_attributes(item_selector: str, label_selector: str, value_selector: str) -> Extractor:
    """Pairs from repeated items with distinct label/value children."""

    @_named(f"labelled_attributes({item_selector})")
    def extract(page: Page) -> List[Tuple[str, str]]:
        pairs = []
        for item in page.soup.select(item_selector):
            label = item.select_one(label_selector)
            value = item.select_one(value_selector)
            if label is not None and value is not None:
                pairs.append((label.get_text(" "), value.get_text(" ")))
        return dedupe_pairs(pairs)

    return extract


def ld_attributes(page: Page) -> List[Tuple[str, str]]:
    """Attributes from JSON-LD ``additionalProperty`` and scalar Product fields."""
    node = page.product_node
    if not node:
        return []
    pairs: List[Tuple[str, str]] = []
    props = node.get("additionalProperty") or []
    if isinstance(props, dict):
        props = [props]
    for prop in props:
        if isinstance(prop, dict):
            pairs.append((str(prop.get("name") or ""), str(prop.get("value") or "")))
    for key in ("brand", "model", "mpn", "sku", "color", "material", "size", "weight"):
        value = node.get(key)
        if isinstance(value, dict):
            value = value.get("name") or value.get("value")
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            pairs.append((key.capitalize(), str(value)))
    return dedupe_pairs(pairs)


def text_attributes(page: Page) -> List[Tuple[str, str]]:
    """Known ``Label: value`` lines (or label line followed by value line) in visible text."""
    pairs: List[Tuple[str, str]] = []
    lines = page.lines
    for idx, line in enumerate(lines):
        if ":" in line or "：" in line:
            label, _, value = re.split(r"([:：])", line, maxsplit=1)
            if clean(label).lower() in KNOWN_ATTRIBUTE_LABELS:
                pairs.append((label, value))
                continue
        if line.lower() in KNOWN_ATTRIBUTE_LABELS and idx + 1 < len(lines):
            nxt = lines[idx + 1]
            if nxt.lower() not in KNOWN_ATTRIBUTE_LABELS:
                pairs.append((line, nxt))
    return dedupe_pairs(pairs)


# ---------------------------------------------------------------------------
# Price tier extractors
# ---------------------------------------------------------------------------


def ladder_tiers(item_selector: str, qty_selector: str, price_selector: str) -> Extractor:
    """Tiers from repeated blocks holding a quantity label and a price."""

    @_named(f"ladder_tiers({item_selector})")
    def extract(page: Page) -> List[PriceTier]:
        tiers: List[PriceTier] = []
        for item in page.soup.select(item_selector):
            qty_node = item.select_one(qty_selector) if qty_selector else item
            label = clean(qty_node.get_text(" ")) if qty_node is not None else ""
            qty = parse_tier_qty(label)
            price_node = item.select_one(price_selector) if price_selector else None
            price_text = clean(price_node.get_text(" ")) if price_node is not None else ""
            if not price_text:
                match = PRICE_TEXT_RE.search(clean(item.get_text(" ")))
                price_text = match.group(0) if match else ""
            if qty and price_text:
                tiers.append(PriceTier(min_qty=qty[0], max_qty=qty[1], price_text=price_text))
        return normalize_tiers(tiers)

    return extract


def _ld_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        return _to_int(value.strip())
    return None


def ld_tiers(page: Page) -> List[PriceTier]:
    """Offers with ``eligibleQuantity`` in JSON-LD."""
    node = page.product_node
    offers = node.get("offers") if node else None
    if isinstance(offers, dict):
        offers = offers.get("offers") or [offers]
    if not isinstance(offers, list):
        return []
    tiers = []
    for offer in offers:
        if not isinstance(offer, dict):
            continue
        qty = offer.get("eligibleQuantity") or {}
        if not isinstance(qty, dict):
            continue
        low = _ld_number(qty.get("minValue"))
        high = _ld_number(qty.get("maxValue"))
        price = offer.get("price") or offer.get("lowPrice")
        if low is None or price in (None, ""):
            continue
        currency = clean(offer.get("priceCurrency")) or ""
        tiers.append(
            PriceTier(
                min_qty=low,
                max_qty=high,
                price_text=f"{currency} {price}".strip(),
            )
        )
    return normalize_tiers(tiers)


def text_tiers(page: Page) -> List[PriceTier]:
    """Quantity ranges on a text line with a price on the same or next line."""
    tiers = []
    lines = page.lines[:400]
    for idx, line in enumerate(lines):
        if not (TIER_RANGE_RE.match(line) or TIER_GTE_RE.match(line)):
            continue
        qty = parse_tier_qty(line)
        if qty is None:
            continue
        match = PRICE_TEXT_RE.search(line)
        if match is None and idx + 1 < len(lines):
            match = PRICE_TEXT_RE.search(lines[idx + 1])
        if match is not None:
            tiers.append(PriceTier(min_qty=qty[0], max_qty=qty[1], price_text=match.group(0)))
    return normalize_tiers(tiers)


# ---------------------------------------------------------------------------
# Image extractors
# ---------------------------------------------------------------------------

IMAGE_ATTRS = ("data-src", "data-original", "data-lazy-src", "data-zoom-image", "src")


def _image_url(node: Tag, page: Page) -> str:
    for attr in IMAGE_ATTRS:
        value = node.get(attr)
        url = page.absolute(value)
        if url:
            return url
    return ""


def select_images(*selectors: str) -> Extractor:
    """Image URLs from ``<img>`` (or elements carrying image attributes)."""

    @_named(f"select_images{selectors}")
    def extract(page: Page) -> List[str]:
        urls: List[str] = []
        for selector in selectors:
            for node in page.soup.select(selector):
                url = _image_url(node, page)
                if url and url not in urls:
                    urls.append(url)
        return urls

    return extract


def meta_images(page: Page) -> List[str]:
    urls = []
    for name in ("og:image", "og:image:url", "twitter:image", "image"):
        url = page.absolute(meta(name)(page))
        if url and url not in urls:
            urls.append(url)
    return urls


def ld_images(page: Page) -> List[str]:
    images = page.product_node.get("image") if page.product_node else None
    if isinstance(images, (str, dict)):
        images = [images]
    urls: List[str] = []
    for item in images or []:
        if isinstance(item, dict):
            item = item.get("url") or item.get("contentUrl")
        url = page.absolute(item)
        if url and url not in urls:
            urls.append(url)
    return urls


def regex_images(host_pattern: str) -> Extractor:
    """Image URLs on a product CDN host found anywhere in the raw HTML."""
    host_re = re.compile(host_pattern, re.IGNORECASE)

    @_named(f"regex_images({host_pattern})")
    def extract(page: Page) -> List[str]:
        urls: List[str] = []
        for raw in IMAGE_URL_RE.findall(page.html.replace("\\/", "/")):
            if not host_re.search(raw):
                continue
            url = absolutize(raw)
            if url and url not in urls:
                urls.append(url)
            if len(urls) >= 30:
                break
        return urls

    return extract


# ---------------------------------------------------------------------------
# Supplier and breadcrumbs
# ---------------------------------------------------------------------------


def supplier_block(name_selectors: Sequence[str], logo_selectors: Sequence[str] = ()) -> Extractor:
    @_named(f"supplier_block{tuple(name_selectors)}")
    def extract(page: Page) -> Supplier:
        for selector in name_selectors:
            node = page.soup.select_one(selector)
            if node is None:
                continue
            name = clean(node.get_text(" "))
            if not name:
                continue
            link = node if node.name == "a" else node.find("a")
            url = page.absolute(link.get("href")) if link is not None else ""
            logo = first_success([select_images(*logo_selectors)], page) if logo_selectors else None
            return Supplier(name=name, url=url or None, logo=(logo or [None])[0])
        return Supplier()

    return extract


def ld_supplier(page: Page) -> Supplier:
    node = page.product_node
    for key in ("manufacturer", "seller", "brand"):
        value = node.get(key) if node else None
        if isinstance(value, dict) and clean(value.get("name")):
            return Supplier(name=clean(value.get("name")), url=clean(value.get("url")) or None)
    offer = node.get("offers") if node else None
    if isinstance(offer, dict) and isinstance(offer.get("seller"), dict):
        name = clean(offer["seller"].get("name"))
        if name:
            return Supplier(name=name)
    return Supplier()


def ld_breadcrumbs(page: Page) -> List[str]:
    for node in page.ld_nodes("BreadcrumbList"):
        items = node.get("itemListElement") or []
        names = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            if not name and isinstance(item.get("item"), dict):
                name = item["item"].get("name")
            name = clean(name)
            if name and name.lower() not in ("home", "all categories"):
                names.append(name)
        if names:
            return names
    return []


def breadcrumbs(*selectors: str) -> Extractor:
    @_named(f"breadcrumbs{selectors}")
    def extract(page: Page) -> List[str]:
        for selector in selectors:
            names = [clean(node.get_text(" ")) for node in page.soup.select(selector)]
            names = [n for n in names if n and n.lower() not in ("home", "all categories", ">")]
            if names:
                return names
        return []

    return extract
