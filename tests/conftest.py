"""Shared fixtures: fake fetchers, clocks, generated images and sample pages."""
from __future__ import annotations

import io
import os
import threading
from typing import Dict, Iterable, List, Optional, Tuple

import httpx
import orjson
import pytest
from PIL import Image

from catalog.config import BreakerSettings, ImageConfig, OrchestratorConfig
from catalog.images import ContentAddressedCache, ImageResolver
from catalog.models import Listing, Platform, RawPage
from catalog.scraper import Orchestrator


ALIBABA_HTML = """
<html>
<head>
  <title>Silicone Kitchen Spatula - Buy Spatula Product on Alibaba.com</title>
  <meta property="og:image" content="https://s.alicdn.com/@sc04/kf/H1234567890abcdef_960x960.jpg">
</head>
<body>
  <h1 data-testid="product-title">Silicone Kitchen Spatula</h1>
  <div data-testid="module_price">$1.20 - $3.50</div>
  <span data-testid="min-order">2 pieces (MOQ)</span>
  <div data-testid="ladder-price">
    <div class="price-item"><div>2 - 499 pieces</div><div><span>$3.50</span></div></div>
    <div class="price-item"><div>&gt;= 500 pieces</div><div><span>$1.20</span></div></div>
  </div>
  <div class="attribute-list">
    <div class="attribute-item"><div class="left">Material</div><div class="right">Silicone</div></div>
    <div class="attribute-item"><div class="left">Color</div><div class="right">Red</div></div>
    <div class="attribute-item"><div class="left">Brand Name</div><div class="right">Acme</div></div>
  </div>
  <a data-testid="company-name" href="https://acme.en.alibaba.com/">Acme Housewares Co., Ltd.</a>
  <div data-testid="product-description">Heat resistant spatula for non-stick cookware.</div>
</body>
</html>
"""


def ld_product_page(attribute_count: int = 10, images: Iterable[str] = ()) -> str:
    """A page whose only structured data is a JSON-LD Product block."""
    product = {
        "@context": "https://schema.org",
        "@type": "Product",
        "name": "Stainless Steel Widget",
        "description": "Brushed stainless steel widget for industrial use.",
        "image": list(images) or ["https://cdn.example.com/p/widget_960x960.jpg"],
        "manufacturer": {"@type": "Organization", "name": "Widget Works Ltd"},
        "additionalProperty": [
            {"@type": "PropertyValue", "name": f"Property {idx}", "value": f"Value {idx}"}
            for idx in range(1, attribute_count + 1)
        ],
        "offers": {
            "@type": "AggregateOffer",
            "offers": [
                {
                    "@type": "Offer",
                    "price": "4.00",
                    "priceCurrency": "USD",
                    "eligibleQuantity": {"minValue": 10, "maxValue": 99},
                },
                {
                    "@type": "Offer",
                    "price": "2.50",
                    "priceCurrency": "USD",
                    "eligibleQuantity": {"minValue": 100},
                },
            ],
        },
    }
    breadcrumbs = {
        "@context": "https://schema.org",
        "@type": "BreadcrumbList",
        "itemListElement": [
            {"@type": "ListItem", "position": 1, "name": "Home"},
            {"@type": "ListItem", "position": 2, "name": "Hardware"},
            {"@type": "ListItem", "position": 3, "name": "Widgets"},
        ],
    }
    return f"""
<html>
<head>
  <meta property="og:title" content="Stainless Steel Widget">
  <script type="application/ld+json">{orjson.dumps(product).decode()}</script>
  <script type="application/ld+json">{orjson.dumps(breadcrumbs).decode()}</script>
</head>
<body>
  <p>Price: US$ 2.50 - 4.00 / Piece</p>
</body>
</html>
"""


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """Records fetches; optionally blocks on a gate and raises queued errors."""

    def __init__(
        self,
        pages: Optional[Dict[str, str]] = None,
        *,
        default_html: str = "<html><body>ok</body></html>",
        errors: Iterable[Exception] = (),
        always: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
        gate_urls: Optional[Iterable[str]] = None,
        name: str = "http",
    ) -> None:
        self.pages = pages or {}
        self.default_html = default_html
        self.errors: List[Exception] = list(errors)
        self.always = always
        self.gate = gate
        self.gate_urls = set(gate_urls) if gate_urls is not None else None
        self.name = name
        self.calls: List[str] = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def fetch(self, url: str, platform: Platform) -> RawPage:
        with self._lock:
            self.calls.append(url)
            error = self.errors.pop(0) if self.errors else self.always
        self.started.set()
        if self.gate is not None and (self.gate_urls is None or url in self.gate_urls):
            self.gate.wait(10)
        if error is not None:
            raise error
        html = self.pages.get(url, self.default_html)
        return RawPage(url=url, final_url=url, status_code=200, html=html, strategy=self.name)


class ImageServer:
    """httpx mock transport serving generated images by URL."""

    def __init__(self) -> None:
        self.routes: Dict[str, Tuple[int, bytes, str]] = {}
        self.requested: List[str] = []
        self.headers: List[httpx.Headers] = []
        self.client = httpx.Client(transport=httpx.MockTransport(self._handle))

    def add(self, url: str, content: bytes, content_type: str = "image/jpeg", status: int = 200) -> str:
        self.routes[url] = (status, content, content_type)
        return url

    def _handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requested.append(url)
        self.headers.append(request.headers)
        status, content, content_type = self.routes.get(url, (404, b"not found", "text/plain"))
        return httpx.Response(status, content=content, headers={"content-type": content_type})


def _image_bytes(width: int, height: int, fmt: str = "JPEG") -> bytes:
    # Noise keeps the encoded size well above the minimum byte threshold.
    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    return _image_bytes


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_fetcher_cls():
    return FakeFetcher


@pytest.fixture
def alibaba_html() -> str:
    return ALIBABA_HTML


@pytest.fixture
def ld_page():
    return ld_product_page


@pytest.fixture
def image_server():
    server = ImageServer()
    yield server
    server.client.close()


@pytest.fixture
def image_config(tmp_path) -> ImageConfig:
    return ImageConfig(cache_dir=tmp_path / "cache")


@pytest.fixture
def resolver(image_config, image_server):
    cache = ContentAddressedCache(image_config.cache_dir, image_config.public_prefix)
    with ImageResolver(cache, image_config, client=image_server.client) as res:
        yield res


@pytest.fixture
def make_listing():
    def factory(**overrides) -> Listing:
        data = {
            "platform": Platform.ALIBABA,
            "url": "https://www.alibaba.com/product-detail/widget_1.html",
            "title": "Widget",
        }
        data.update(overrides)
        return Listing(**data)

    return factory


@pytest.fixture
def orchestrator_factory():
    created: List[Orchestrator] = []

    def factory(http_fetcher, *, renderer=None, clock=None, **overrides) -> Orchestrator:
        settings = {
            "global_concurrency": 4,
            "max_attempts": 3,
            "backoff_initial": 0.01,
            "backoff_max": 0.01,
            "backoff_jitter": 0.0,
            "enable_rendering": renderer is not None,
            "breaker": BreakerSettings(failure_threshold=2, cooldown=60.0),
        }
        settings.update(overrides)
        kwargs = {"http_fetcher": http_fetcher, "renderer": renderer, "sleep": lambda _: None}
        if clock is not None:
            kwargs["clock"] = clock
        orchestrator = Orchestrator(OrchestratorConfig(**settings), **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown(wait=False, cancel_pending=True)
