"""Product metadata scraping for links pasted into a wishlist.

Open Graph / Twitter meta tags are preferred, schema.org Product JSON-LD
fills whatever they miss, and ``<title>`` / ``<h1>`` are last resorts.
"""

from decimal import Decimal, InvalidOperation
import json
import logging
import re
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup
import httpx

from app.core.config import settings
from app.core.parse_cache import parse_cache


logger = logging.getLogger("giftify.link_metadata")

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_REJECT_TITLE_PARTS = (
    "just a moment",
    "attention required",
    "access denied",
    "captcha",
    "robot check",
    "enable javascript",
    "are you a robot",
)

_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "₽": "RUB", "₹": "INR"}


class LinkMetadataError(Exception):
    """The page could not be fetched."""


def normalize_url(raw: str) -> str:
    value = re.sub(r"\s+", "", (raw or "").strip())
    if not value:
        return ""
    if value.startswith("//"):
        value = "https:" + value
    elif not value.startswith(("http://", "https://")):
        value = "https://" + value
    return re.sub(r"^(https?://)(https?://)+", r"\1", value)


def extract_price(value: object) -> str | None:
    """Parse a human price string into a plain decimal string like ``"49.99"``."""
    if value is None:
        return None
    text = str(value).replace("\u00a0", " ").strip()
    match = re.search(r"\d[\d\s.,]*", text)
    if not match:
        return None

    numeric = match.group(0).replace(" ", "").rstrip(".,")
    if "," in numeric and "." in numeric:
        if numeric.rfind(",") > numeric.rfind("."):
            numeric = numeric.replace(".", "").replace(",", ".")
        else:
            numeric = numeric.replace(",", "")
    elif numeric.count(",") == 1 and len(numeric.split(",")[1]) in (1, 2):
        numeric = numeric.replace(",", ".")
    else:
        numeric = numeric.replace(",", "")
        if numeric.count(".") > 1:
            numeric = numeric.replace(".", "")

    try:
        amount = Decimal(numeric)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return format(amount.normalize(), "f")


def _normalize_currency(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if stripped in _CURRENCY_SYMBOLS:
        return _CURRENCY_SYMBOLS[stripped]
    cleaned = re.sub(r"[^A-Za-z]", "", stripped).upper()
    return cleaned if len(cleaned) == 3 else None


def _clean_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = " ".join(value.split())
    return cleaned or None


def _first_string(value: object) -> str | None:
    if isinstance(value, str):
        return _clean_text(value)
    if isinstance(value, list):
        for item in value:
            found = _first_string(item)
            if found:
                return found
    if isinstance(value, dict):
        for key in ("url", "contentUrl", "name"):
            found = _first_string(value.get(key))
            if found:
                return found
    return None


def _is_product_type(value: object) -> bool:
    if isinstance(value, str):
        return "product" in value.lower()
    if isinstance(value, list):
        return any(_is_product_type(item) for item in value)
    return False


def _iter_jsonld(soup: BeautifulSoup):
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text(strip=True)
        if not raw:
            continue
        try:
            yield json.loads(raw)
        except json.JSONDecodeError:
            continue


def _iter_products(data: object):
    stack = [data]
    while stack:
        current = stack.pop()
        if isinstance(current, dict):
            if _is_product_type(current.get("@type")):
                yield current
            stack.extend(v for v in current.values() if isinstance(v, (dict, list)))
        elif isinstance(current, list):
            stack.extend(v for v in current if isinstance(v, (dict, list)))


def _offer_details(offers: object) -> tuple[str | None, str | None]:
    price: str | None = None
    currency: str | None = None
    stack = [offers]
    while stack and (price is None or currency is None):
        current = stack.pop()
        if isinstance(current, dict):
            if price is None:
                for key in ("price", "lowPrice", "highPrice"):
                    price = extract_price(current.get(key))
                    if price is not None:
                        break
            if currency is None:
                currency = _normalize_currency(current.get("priceCurrency") or current.get("currency"))
            stack.extend(v for v in current.values() if isinstance(v, (dict, list)))
        elif isinstance(current, list):
            stack.extend(v for v in current if isinstance(v, (dict, list)))
    return price, currency


def _jsonld_product(soup: BeautifulSoup) -> dict[str, Any]:
    best: dict[str, Any] = {}
    best_score = -1
    for payload in _iter_jsonld(soup):
        for product in _iter_products(payload):
            price, currency = _offer_details(product.get("offers") or product)
            candidate = {
                "title": _clean_text(product.get("name")),
                "description": _clean_text(product.get("description")),
                "image_url": _first_string(product.get("image")),
                "price": price,
                "currency": currency,
            }
            score = sum(1 for value in candidate.values() if value)
            if score > best_score:
                best, best_score = candidate, score
    return best


def _meta(soup: BeautifulSoup, *selectors: dict[str, str]) -> str | None:
    for attrs in selectors:
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            value = _clean_text(tag["content"])
            if value:
                return value
    return None


def _is_rejected_title(title: str) -> bool:
    text = title.lower()
    return len(text) <= 2 or any(part in text for part in _REJECT_TITLE_PARTS)


def parse_html(html: str, url: str) -> dict[str, str | None]:
    soup = BeautifulSoup(html, "html.parser")
    product = _jsonld_product(soup)

    title = _meta(soup, {"property": "og:title"}, {"name": "twitter:title"}) or product.get("title")
    if not title:
        h1 = soup.find("h1")
        title = _clean_text(h1.get_text()) if h1 else None
    if not title and soup.title and soup.title.string:
        title = _clean_text(soup.title.string)
    if title and _is_rejected_title(title):
        title = None

    description = (
        _meta(soup, {"property": "og:description"}, {"name": "twitter:description"}, {"name": "description"})
        or product.get("description")
    )

    image_url = _meta(
        soup,
        {"property": "og:image"},
        {"property": "og:image:url"},
        {"name": "twitter:image"},
    ) or product.get("image_url")
    if image_url:
        image_url = urljoin(url, image_url)

    price = extract_price(
        _meta(soup, {"property": "product:price:amount"}, {"property": "og:price:amount"}, {"itemprop": "price"})
    ) or product.get("price")
    currency = _normalize_currency(
        _meta(soup, {"property": "product:price:currency"}, {"property": "og:price:currency"}, {"itemprop": "priceCurrency"})
    ) or product.get("currency")

    return {
        "title": title,
        "description": description,
        "image_url": image_url,
        "price": price,
        "currency": currency,
        "url": url,
    }


async def fetch_link_metadata(raw_url: str, client: httpx.AsyncClient | None = None) -> dict[str, str | None]:
    """Fetch ``raw_url`` and extract ``{title, description, image_url, price, currency, url}``.

    Raises ``LinkMetadataError`` when the page cannot be downloaded.
    """
    url = normalize_url(raw_url)
    if not url:
        raise LinkMetadataError("Empty URL")

    cached = await parse_cache.get(url)
    if cached is not None:
        return cached

    try:
        if client is None:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=settings.link_metadata_timeout_seconds,
            ) as own_client:
                resp = await own_client.get(url, headers=_HEADERS)
        else:
            resp = await client.get(url, headers=_HEADERS)
    except httpx.HTTPError as exc:
        logger.warning("Link metadata fetch failed url=%s error=%s", url, exc)
        raise LinkMetadataError(str(exc)) from exc

    if resp.status_code >= 400:
        logger.warning("Link metadata fetch failed url=%s status=%s", url, resp.status_code)
        raise LinkMetadataError(f"HTTP {resp.status_code}")

    metadata = parse_html(resp.text, str(resp.url))
    logger.info(
        "Link metadata parsed url=%s title=%s price=%s",
        url,
        bool(metadata["title"]),
        metadata["price"],
    )
    await parse_cache.set(url, metadata)
    return metadata
