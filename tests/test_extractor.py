import json
from decimal import Decimal

import pytest

from harvest.crawler.extractor import (
    DEFAULT_BRAND,
    derive_handle,
    extract_product_fields,
    slugify,
)
from harvest.errors import ParseError

BASE_URL = "https://shop.example.com/products/batman-01"


def _page(head="", body=""):
    return f"<html><head>{head}</head><body>{body}</body></html>"


def _jsonld(data):
    return f'<script type="application/ld+json">{json.dumps(data)}</script>'


PRODUCT = {
    "@context": "https://schema.org",
    "@type": "Product",
    "name": "Pop! Batman",
    "sku": "SKU-123",
    "mpns": ["01", "01B"],
    "brand": {"@type": "Brand", "name": "Funko Pop!"},
    "category": ["Heroes", "DC", "Heroes"],
    "releaseDate": "2011-06-01",
    "image": ["/img/batman-front.jpg", "https://cdn.example.com/batman-back.jpg"],
    "offers": [
        {"@type": "Offer", "price": "12.99", "priceCurrency": "usd"},
        {"@type": "Offer", "price": "99.00", "priceCurrency": "eur"},
    ],
}


def test_structured_data_wins_over_dom_heuristics():
    html = _page(
        head=(
            "<title>Shop | Something Else</title>"
            '<meta property="og:title" content="OG Title">'
            '<meta property="og:image" content="https://cdn.example.com/og.jpg">'
            + _jsonld(PRODUCT)
        ),
        body='<img src="/img/other.jpg">',
    )

    fields = extract_product_fields(html, BASE_URL)

    assert fields.title == "Pop! Batman"
    assert fields.price == Decimal("12.99")
    assert fields.currency == "USD"
    assert fields.images == [
        "https://shop.example.com/img/batman-front.jpg",
        "https://cdn.example.com/batman-back.jpg",
        "https://cdn.example.com/og.jpg",
        "https://shop.example.com/img/other.jpg",
    ]
    assert fields.image_url == "https://shop.example.com/img/batman-front.jpg"
    assert fields.sku == "SKU-123"
    assert fields.number == "01"
    assert fields.brand == "Funko Pop!"
    assert fields.category == ["Heroes", "DC"]
    assert fields.series == ["Heroes", "DC"]
    assert fields.release_date == "2011-06-01"
    assert fields.handle == "pop-batman-01"


def test_falls_back_to_social_meta_without_structured_data():
    html = _page(
        head=(
            "<title>Document Title</title>"
            '<meta property="og:title" content="Pop! Robin">'
            '<meta name="twitter:image" content="/media/robin.png">'
        )
    )

    fields = extract_product_fields(html, BASE_URL)

    assert fields.title == "Pop! Robin"
    assert fields.image_url == "https://shop.example.com/media/robin.png"
    assert fields.brand == DEFAULT_BRAND
    assert fields.price is None
    assert fields.currency is None
    assert fields.number is None
    assert fields.handle == "pop-robin"


def test_falls_back_to_document_title():
    fields = extract_product_fields(_page(head="<title>  Pop! Joker  </title>"), BASE_URL)

    assert fields.title == "Pop! Joker"
    assert fields.images == []
    assert fields.image_url is None


def test_malformed_block_is_skipped_and_scanning_continues():
    html = _page(
        head=(
            '<script type="application/ld+json">{"@type": "Product", "name": </script>'
            + _jsonld({"@type": "Product", "name": "Pop! Alfred", "sku": "77"})
        )
    )

    fields = extract_product_fields(html, BASE_URL)

    assert fields.title == "Pop! Alfred"
    assert fields.number == "77"


def test_only_malformed_block_falls_through_to_next_tier():
    html = _page(
        head=(
            "<title>Pop! Bane</title>"
            '<script type="application/ld+json">not json at all</script>'
        )
    )

    fields = extract_product_fields(html, BASE_URL)

    assert fields.title == "Pop! Bane"


def test_deeply_nested_block_is_skipped():
    depth = 100000
    html = _page(
        head=(
            '<meta property="og:title" content="Pop! Joker">'
            f'<script type="application/ld+json">{"[" * depth}{"]" * depth}</script>'
        )
    )

    fields = extract_product_fields(html, BASE_URL)

    assert fields.title == "Pop! Joker"


def test_list_valued_name_and_sku_take_first_value():
    html = _page(head=_jsonld({"@type": "Product", "name": ["", "Pop! Robin", "Robin"], "sku": ["42", "43"]}))

    fields = extract_product_fields(html, BASE_URL)

    assert fields.title == "Pop! Robin"
    assert fields.number == "42"


def test_non_product_blocks_are_ignored_and_first_product_wins():
    html = _page(
        head=(
            _jsonld({"@type": "BreadcrumbList", "name": "Breadcrumbs"})
            + _jsonld([{"@type": "Organization", "name": "Shop"}, {"@type": ["Thing", "ProductModel"], "name": "First"}])
            + _jsonld({"@type": "Product", "name": "Second"})
        )
    )

    assert extract_product_fields(html, BASE_URL).title == "First"


def test_product_inside_graph_is_found():
    html = _page(head=_jsonld({"@graph": [{"@type": "WebPage"}, {"@type": "Product", "name": "Graph Pop"}]}))

    assert extract_product_fields(html, BASE_URL).title == "Graph Pop"


def test_missing_title_is_a_parse_error():
    html = _page(body='<img src="/img/a.jpg">')

    with pytest.raises(ParseError):
        extract_product_fields(html, BASE_URL)


def test_image_filtering_and_dedupe():
    html = _page(
        head=(
            "<title>Pop! Catwoman</title>"
            '<meta property="og:image" content="https://cdn.example.com/main.jpg">'
            '<meta property="og:image:url" content="https://cdn.example.com/main.jpg">'
        ),
        body=(
            '<img src="/logo.svg">'
            '<img src="/spinner.GIF">'
            '<img src="/assets/sprite-sheet.png">'
            '<img src="/assets/cart-icon.png">'
            '<img data-src="/lazy/one.jpg">'
            '<img data-original="/lazy/two.jpg">'
            '<img src="https://cdn.example.com/main.jpg">'
            "<img>"
        ),
    )

    fields = extract_product_fields(html, BASE_URL)

    assert fields.images == [
        "https://cdn.example.com/main.jpg",
        "https://shop.example.com/lazy/one.jpg",
        "https://shop.example.com/lazy/two.jpg",
    ]


def test_structured_image_object_and_single_offer():
    product = {
        "@type": "Product",
        "name": "Pop! Penguin",
        "brand": "Funko",
        "image": {"@type": "ImageObject", "url": "https://cdn.example.com/penguin.jpg"},
        "offers": {"@type": "AggregateOffer", "lowPrice": 9.5, "priceCurrency": "gbp"},
    }

    fields = extract_product_fields(_page(head=_jsonld(product)), BASE_URL)

    assert fields.image_url == "https://cdn.example.com/penguin.jpg"
    assert fields.price == Decimal("9.5")
    assert fields.currency == "GBP"
    assert fields.brand == "Funko"
    assert fields.series == ["Funko"]
    assert fields.category is None


def test_unparsable_price_becomes_none():
    product = {"@type": "Product", "name": "Pop! Riddler", "offers": {"price": "call us", "priceCurrency": "usd"}}

    fields = extract_product_fields(_page(head=_jsonld(product)), BASE_URL)

    assert fields.price is None
    assert fields.currency == "USD"


def test_series_prefers_related_fields_when_category_missing():
    product = {"@type": "Product", "name": "Pop! Two-Face", "isRelatedTo": "Batman Returns", "datePublished": "2020"}

    fields = extract_product_fields(_page(head=_jsonld(product)), BASE_URL)

    assert fields.series == ["Batman Returns"]
    assert fields.release_date == "2020"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Pop! Batman #01", "pop-batman-01"),
        ("  --Hello,   World--  ", "hello-world"),
        ("!!!", None),
        ("", None),
        (None, None),
    ],
)
def test_slugify(text, expected):
    assert slugify(text) == expected


def test_derive_handle_fallbacks():
    assert derive_handle("Pop! Batman", "01", "Funko") == "pop-batman-01"
    assert derive_handle("Pop! Batman", None, "Funko") == "pop-batman"
    assert derive_handle("!!!", "42", "Funko") == "42"
    assert derive_handle("!!!", None, "Funko") == "funko"
