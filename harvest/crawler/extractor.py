"""Product field extraction from page HTML.

Fields are resolved independently, each with its own precedence:

1. JSON-LD ``Product`` block (``<script type="application/ld+json">``)
2. Open Graph / Twitter meta tags
3. Plain DOM (``<title>``, ``<img>``)

The module does no I/O. The only failure it raises is ``ParseError`` when no
title (or no handle) can be derived.
"""
from __future__ import annotations

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..errors import ParseError
from ..models import ProductFields

DEFAULT_BRAND = "Funko"

# Tried in this order after the structured image field.
SOCIAL_IMAGE_META = (
    ("property", "og:image"),
    ("name", "twitter:image"),
    ("property", "og:image:url"),
)
IMG_SOURCE_ATTRS = ("src", "data-src", "data-original")

_SKIPPED_IMAGE_EXT = re.compile(r"\.(svg|gif)$", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(text: Optional[str]) -> Optional[str]:
    """Lower-case, collapse non-alphanumeric runs to ``-``, trim the ends."""
    if not text:
        return None
    slug = _NON_ALNUM.sub("-", str(text).strip().lower()).strip("-")
    return slug or None


def derive_handle(title: Optional[str], number: Optional[str], brand: Optional[str]) -> Optional[str]:
    """Handle from ``title-number``, then ``title``, then ``brand-number``."""
    candidates = [
        f"{title}-{number}" if title and number else title,
        title,
        "-".join(part for part in (brand, number) if part),
    ]
    for candidate in candidates:
        handle = slugify(candidate)
        if handle:
            return handle
    return None


def unique(values: Iterable[Any]) -> List[Any]:
    """Drop falsy values and duplicates, keeping first-seen order."""
    seen = set()
    out = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def coerce_list(value: Any) -> List[Any]:
    if value is None or value == "" or value == []:
        return []
    return list(value) if isinstance(value, list) else [value]


def resolve_url(url: Any, base_url: str) -> Optional[str]:
    if not url or not isinstance(url, str):
        return None
    try:
        return urljoin(base_url, url.strip())
    except ValueError:
        return None


def _text(value: Any) -> Optional[str]:
    """Stringify a JSON-LD scalar or named object; lists yield their first value."""
    if value is None:
        return None
    if isinstance(value, list):
        for item in value:
            text = _text(item)
            if text:
                return text
        return None
    if isinstance(value, dict):
        value = value.get("name") or value.get("@id")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def _parse_json_block(raw: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except (ValueError, RecursionError):
        return None


def _iter_candidates(data: Any) -> Iterator[Dict[str, Any]]:
    for obj in coerce_list(data):
        if not isinstance(obj, dict):
            continue
        yield obj
        for nested in coerce_list(obj.get("@graph")):
            if isinstance(nested, dict):
                yield nested


def _is_product(obj: Dict[str, Any]) -> bool:
    type_tag = obj.get("@type") or obj.get("type") or ""
    if isinstance(type_tag, list):
        return any("product" in str(t).lower() for t in type_tag)
    return "product" in str(type_tag).lower()


def pick_product_jsonld(soup: BeautifulSoup) -> Optional[Dict[str, Any]]:
    """Return the first JSON-LD object typed as a product, in document order.

    Blocks that are empty or not valid JSON are skipped.
    """
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        data = _parse_json_block(raw)
        if data is None:
            continue
        for obj in _iter_candidates(data):
            if _is_product(obj):
                return obj
    return None


def meta_content(soup: BeautifulSoup, attr: str, value: str) -> Optional[str]:
    tag = soup.find("meta", attrs={attr: value})
    if tag is None:
        return None
    content = (tag.get("content") or "").strip()
    return content or None


def _structured_images(product: Dict[str, Any]) -> List[Any]:
    out = []
    for image in coerce_list(product.get("image")):
        if isinstance(image, dict):
            image = image.get("url") or image.get("contentUrl")
        out.append(image)
    return out


def _keep_image(url: str) -> bool:
    if _SKIPPED_IMAGE_EXT.search(url):
        return False
    lowered = url.lower()
    return "sprite" not in lowered and "icon" not in lowered


def extract_images(soup: BeautifulSoup, product: Dict[str, Any], base_url: str) -> List[str]:
    """Structured images, then social meta images, then ``<img>`` sources."""
    found: List[Optional[str]] = [resolve_url(u, base_url) for u in _structured_images(product)]

    for attr, value in SOCIAL_IMAGE_META:
        found.append(resolve_url(meta_content(soup, attr, value), base_url))

    for img in soup.find_all("img"):
        src = next((img.get(a) for a in IMG_SOURCE_ATTRS if img.get(a)), None)
        found.append(resolve_url(src, base_url))

    return unique(url for url in found if url and _keep_image(url))


def _extract_brand(product: Dict[str, Any]) -> str:
    brand = product.get("brand")
    if isinstance(brand, dict):
        brand = brand.get("name") or brand.get("@id") or brand.get("@type")
    return _text(brand) or DEFAULT_BRAND


def _string_list(value: Any) -> Optional[List[str]]:
    items = unique(_text(v) for v in coerce_list(value))
    return items or None


def _extract_offer(product: Dict[str, Any]) -> Tuple[Optional[Decimal], Optional[str]]:
    offers = product.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    if not isinstance(offers, dict):
        return None, None

    price = None
    raw_price = offers.get("price") or offers.get("lowPrice")
    if raw_price not in (None, ""):
        try:
            price = Decimal(str(raw_price).strip())
        except InvalidOperation:
            price = None
        if price is not None and not price.is_finite():
            price = None

    currency = _text(offers.get("priceCurrency"))
    return price, currency.upper() if currency else None


def extract_product_fields(html: str, base_url: str) -> ProductFields:
    """Extract canonical product fields from a product page.

    Parameters
    ----------
    html : str
        Page HTML
    base_url : str
        URL the page was fetched from; relative image URLs resolve against it

    Returns
    -------
    ProductFields
        Extracted fields

    Raises
    ------
    ParseError
        If no title can be resolved by any tier
    """
    soup = BeautifulSoup(html or "", "html.parser")
    product = pick_product_jsonld(soup) or {}

    title_tag = soup.find("title")
    title = (
        _text(product.get("name"))
        or meta_content(soup, "property", "og:title")
        or (_text(title_tag.get_text()) if title_tag else None)
    )
    if not title:
        raise ParseError("No title parsed")

    sku = _text(product.get("sku")) or _text(product.get("productID"))
    mpns = coerce_list(product.get("mpns"))
    # Best effort: the first listed identifier is usually the catalog number.
    number = (_text(mpns[0]) if mpns else None) or sku
    brand = _extract_brand(product)

    series_source = next(
        (product.get(key) for key in ("category", "isRelatedTo", "isPartOf", "brand") if product.get(key)),
        None,
    )
    price, currency = _extract_offer(product)
    images = extract_images(soup, product, base_url)

    handle = derive_handle(title, number, brand)
    if not handle:
        raise ParseError(f"No handle derived from title {title!r}")

    release_date = _text(product.get("releaseDate")) or _text(product.get("datePublished"))

    return ProductFields(
        handle=handle,
        title=title,
        sku=sku,
        number=number,
        brand=brand,
        series=_string_list(series_source),
        category=_string_list(product.get("category")),
        release_date=release_date,
        price=price,
        currency=currency,
        image_url=images[0] if images else None,
        images=images,
    )
