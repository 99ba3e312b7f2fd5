from __future__ import annotations

import re
from typing import Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .models import ProductDetail, ProductRecord, RawProduct

DEFAULT_DEVICE_TYPE = "Matter Device"

_CERT_PREFIX = re.compile(r"^\s*certificate id\s*:\s*", re.IGNORECASE)
_HEX_BODY = re.compile(r"^[0-9a-f]+$", re.IGNORECASE)
_EMPTY_VALUES = {"", "n/a", "-", "none", "unknown"}

# (substring of the certificate table key, field). First match wins.
_TABLE_KEYS = [
    ("certification id", "certification_id"),
    ("certification date", "certification_date"),
    ("software version", "software_version"),
    ("hardware version", "hardware_version"),
    ("vid", "vid"),
    ("pid", "pid"),
    ("family sku", "family_sku"),
    ("family variant sku", "family_variant_sku"),
    ("firmware version", "firmware_version"),
    ("family id", "family_id"),
    ("trp tested", "tis_trp_tested"),
    ("specification version", "specification_version"),
    ("transport interface", "transport_interface"),
    ("primary device type id", "primary_device_type_id"),
    ("device type", "device_type"),
    ("product type", "device_type"),
]

_LIST_KEYS = [
    ("manufacturer", "manufacturer"),
    ("company", "manufacturer"),
    ("vendor id", "vid"),
    ("vid", "vid"),
    ("product id", "pid"),
    ("pid", "pid"),
    ("family variant sku", "family_variant_sku"),
    ("family sku", "family_sku"),
    ("firmware version", "firmware_version"),
    ("hardware version", "hardware_version"),
    ("software version", "software_version"),
    ("certificate id", "certification_id"),
    ("certification id", "certification_id"),
    ("certified date", "certification_date"),
    ("certification date", "certification_date"),
    ("family id", "family_id"),
    ("tis", "tis_trp_tested"),
    ("trp", "tis_trp_tested"),
    ("specification version", "specification_version"),
    ("spec version", "specification_version"),
    ("transport interface", "transport_interface"),
    ("primary device", "primary_device_type_id"),
    ("device type", "device_type"),
    ("product type", "device_type"),
    ("category", "device_type"),
]


def _text(node) -> Optional[str]:
    if node is None:
        return None
    value = node.get_text(" ", strip=True)
    return value or None


def extract_products(html: str, base_url: str = "") -> List[RawProduct]:
    """Extract product cards from a listing page.

    The site renders newest first; the list is reversed so index 0 is the
    oldest card on the page.
    """
    soup = BeautifulSoup(html, "html.parser")
    articles = list(reversed(soup.select("div.post-feed article")))
    products: List[RawProduct] = []
    for index, article in enumerate(articles):
        link = article.select_one("a[href]")
        href = link.get("href") if link is not None else None
        certificate = _text(article.select_one("p.entry-certificate-id"))
        if certificate:
            certificate = _CERT_PREFIX.sub("", certificate)
        else:
            certificate = _text(article.select_one("span.entry-cert-id"))
        products.append(
            RawProduct.from_mapping(
                {
                    "url": urljoin(base_url, href) if href else None,
                    "manufacturer": _text(article.select_one("p.entry-company.notranslate")),
                    "model": _text(article.select_one("h3.entry-title")),
                    "certificate_id": certificate,
                },
                index,
            )
        )
    return products


def extract_total_pages(html: str) -> int:
    """Highest page number in the pagination bar; 1 when there is no bar."""
    soup = BeautifulSoup(html, "html.parser")
    numbers = []
    for span in soup.select("div.pagination-wrapper > nav > div > a > span"):
        text = span.get_text(strip=True).replace(",", "")
        if text.isdigit():
            numbers.append(int(text))
    return max(numbers) if numbers else 1


def parse_numeric_id(value: Optional[str]) -> Optional[int]:
    """Parse a vendor or product id. Bare digit strings are read as hex, like the site shows them."""
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _EMPTY_VALUES:
        return None
    if text.lower().startswith("0x"):
        text = text[2:]
    if _HEX_BODY.match(text):
        return int(text, 16)
    return None


def format_hex_id(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return f"0x{value:04X}"


def _match_key(key: str, table) -> Optional[str]:
    for needle, name in table:
        if needle in key:
            return name
    return None


def _table_fields(soup: BeautifulSoup) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for row in soup.select(".product-certificates-table tr"):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        key = (cells[0].get_text(" ", strip=True) or "").lower()
        value = cells[1].get_text(" ", strip=True)
        name = _match_key(key, _TABLE_KEYS)
        if name and value and name not in fields:
            fields[name] = value
    return fields


def _list_fields(soup: BeautifulSoup) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for item in soup.select(".entry-product-details div ul li"):
        label = _text(item.select_one("span.label"))
        value = _text(item.select_one("span.value"))
        if not label or not value:
            continue
        name = _match_key(label.lower(), _LIST_KEYS)
        if name and name not in fields:
            fields[name] = value
    return fields


def _application_categories(soup: BeautifulSoup, device_type: str) -> List[str]:
    categories: List[str] = []
    for heading in soup.find_all("h3"):
        if "Application Categories" in heading.get_text():
            parent = heading.parent
            if parent is not None:
                categories = [c for c in (_text(li) for li in parent.select("ul li")) if c]
            break
    if not categories:
        categories = [device_type]
    return categories


def extract_product_details(html: str, product: ProductRecord) -> ProductDetail:
    """Build a ProductDetail from a product page.

    The certificate table wins over the detail list; the listing record
    fills whatever the page does not state.
    """
    soup = BeautifulSoup(html, "html.parser")
    fields = _list_fields(soup)
    fields.update(_table_fields(soup))

    device_type = fields.get("device_type") or DEFAULT_DEVICE_TYPE
    software_version = fields.get("software_version") or fields.get("firmware_version")
    return ProductDetail(
        url=product.url,
        page_id=product.page_id,
        index_in_page=product.index_in_page,
        manufacturer=fields.get("manufacturer") or product.manufacturer,
        model=product.model or _text(soup.select_one("h1.entry-title")),
        device_type=device_type,
        certification_id=fields.get("certification_id") or product.certificate_id,
        certification_date=fields.get("certification_date"),
        software_version=software_version,
        hardware_version=fields.get("hardware_version"),
        vid=parse_numeric_id(fields.get("vid")),
        pid=parse_numeric_id(fields.get("pid")),
        family_sku=fields.get("family_sku"),
        family_variant_sku=fields.get("family_variant_sku"),
        firmware_version=fields.get("firmware_version") or software_version,
        family_id=fields.get("family_id"),
        tis_trp_tested=fields.get("tis_trp_tested"),
        specification_version=fields.get("specification_version"),
        transport_interface=fields.get("transport_interface"),
        primary_device_type_id=fields.get("primary_device_type_id"),
        application_categories=tuple(_application_categories(soup, device_type)),
    )
