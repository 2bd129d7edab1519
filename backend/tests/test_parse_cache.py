"""
Link metadata: HTML extraction and the redis-backed cache in front of it.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.core.link_metadata import (
    LinkMetadataError,
    extract_price,
    fetch_link_metadata,
    normalize_url,
    parse_html,
)
from app.core.parse_cache import ParseCache


PRODUCT_PAGE = """
<html>
  <head>
    <title>Fallback title</title>
    <meta property="og:title" content="Noise-cancelling Headphones">
    <meta property="og:description" content="  Quiet   everywhere. ">
    <meta property="og:image" content="/img/headphones.jpg">
    <meta property="product:price:amount" content="1 299,00">
    <meta property="product:price:currency" content="€">
  </head>
  <body><h1>Ignored heading</h1></body>
</html>
"""

JSONLD_PAGE = """
<html>
  <head>
    <script type="application/ld+json">
      {"@context": "https://schema.org", "@graph": [
        {"@type": "BreadcrumbList"},
        {"@type": "Product", "name": "Trail Shoes", "image": ["https://cdn.shop/shoe.png"],
         "offers": {"@type": "Offer", "price": "89.90", "priceCurrency": "usd"}}
      ]}
    </script>
  </head>
  <body></body>
</html>
"""


class TestParseHtml:
    def test_open_graph_tags(self):
        meta = parse_html(PRODUCT_PAGE, "https://shop.example.com/p/42")
        assert meta["title"] == "Noise-cancelling Headphones"
        assert meta["description"] == "Quiet everywhere."
        assert meta["image_url"] == "https://shop.example.com/img/headphones.jpg"
        assert meta["price"] == "1299"
        assert meta["currency"] == "EUR"
        assert meta["url"] == "https://shop.example.com/p/42"

    def test_jsonld_product(self):
        meta = parse_html(JSONLD_PAGE, "https://shop.example.com/shoes")
        assert meta["title"] == "Trail Shoes"
        assert meta["image_url"] == "https://cdn.shop/shoe.png"
        assert meta["price"] == "89.9"
        assert meta["currency"] == "USD"

    def test_falls_back_to_heading(self):
        meta = parse_html("<html><body><h1> Desk Lamp </h1></body></html>", "https://x.example.com")
        assert meta["title"] == "Desk Lamp"
        assert meta["price"] is None

    def test_rejects_bot_wall_titles(self):
        meta = parse_html("<html><head><title>Access Denied</title></head></html>", "https://x.example.com")
        assert meta["title"] is None


class TestHelpers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("$49.99", "49.99"),
            ("1.299,50 €", "1299.5"),
            ("1,299.50", "1299.5"),
            ("12,5", "12.5"),
            ("free", None),
            ("0", None),
        ],
    )
    def test_extract_price(self, raw, expected):
        assert extract_price(raw) == expected

    def test_normalize_url(self):
        assert normalize_url("shop.example.com/p/1") == "https://shop.example.com/p/1"
        assert normalize_url("//cdn.example.com/a.png") == "https://cdn.example.com/a.png"
        assert normalize_url("https://https://shop.example.com") == "https://shop.example.com"
        assert normalize_url("   ") == ""


@pytest.mark.anyio
class TestFetch:
    async def test_fetch_uses_given_client(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["User-Agent"]
            return httpx.Response(200, text=PRODUCT_PAGE)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            meta = await fetch_link_metadata("shop.example.com/p/42", client=client)
        assert meta["title"] == "Noise-cancelling Headphones"
        assert meta["url"] == "https://shop.example.com/p/42"

    async def test_fetch_http_error(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
            with pytest.raises(LinkMetadataError):
                await fetch_link_metadata("https://shop.example.com/down", client=client)

    async def test_fetch_empty_url(self):
        with pytest.raises(LinkMetadataError):
            await fetch_link_metadata("  ")


class TestParseCacheNormalizeUrl:
    def test_removes_trailing_slash(self):
        assert ParseCache.normalize_url("https://example.com/path/") == "https://example.com/path"

    def test_removes_tracking_params(self):
        normalized = ParseCache.normalize_url("https://example.com/p?id=1&utm_source=x&fbclid=abc")
        assert normalized == "https://example.com/p?id=1"

    def test_same_key_for_tracked_and_clean_url(self):
        cache = ParseCache(redis_dsn="")
        assert cache._key("https://example.com/p?utm_campaign=sale") == cache._key("https://example.com/p")
        assert cache._key("https://example.com/p").startswith("parse:")


@pytest.mark.anyio
class TestParseCacheRedis:
    def _cache_with(self, client) -> ParseCache:
        cache = ParseCache(redis_dsn="redis://cache:6379/0")
        cache._disabled = False
        cache._redis = client
        return cache

    async def test_get_hit_and_miss(self):
        client = MagicMock()
        client.get = AsyncMock(side_effect=[json.dumps({"title": "Lamp"}), None])
        cache = self._cache_with(client)

        assert await cache.get("https://example.com/lamp") == {"title": "Lamp"}
        assert await cache.get("https://example.com/other") is None
        assert cache.get_stats()["hits"] == 1
        assert cache.get_stats()["misses"] == 1

    async def test_set_uses_ttl(self):
        client = MagicMock()
        client.setex = AsyncMock(return_value=True)
        cache = self._cache_with(client)

        assert await cache.set("https://example.com/lamp", {"title": "Lamp"}, ttl=60) is True
        key, ttl, payload = client.setex.call_args.args
        assert key.startswith("parse:")
        assert ttl == 60
        assert json.loads(payload) == {"title": "Lamp"}

    async def test_disabled_when_testing(self):
        with patch.dict("os.environ", {"TESTING": "1"}):
            cache = ParseCache(redis_dsn="redis://cache:6379/0")
        assert await cache.get("https://example.com") is None
        assert await cache.set("https://example.com", {}) is False
