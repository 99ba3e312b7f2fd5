"""Tests for listing and detail page extraction."""

import unittest

from catalog_crawler.models import ProductRecord
from catalog_crawler.parsers import (
    DEFAULT_DEVICE_TYPE,
    extract_product_details,
    extract_products,
    extract_total_pages,
    format_hex_id,
    parse_numeric_id,
)

LISTING_HTML = """
<html><body>
<div class="post-feed">
  <article>
    <a href="/csa_product/newest-bulb/">link</a>
    <p class="entry-company notranslate">Acme</p>
    <h3 class="entry-title">Newest Bulb</h3>
    <p class="entry-certificate-id">Certificate ID: CSA22001</p>
  </article>
  <article>
    <a href="https://csa-iot.org/csa_product/older-plug/">link</a>
    <p class="entry-company notranslate">Globex</p>
    <h3 class="entry-title">Older Plug</h3>
    <span class="entry-cert-id">CSA21999</span>
  </article>
  <article>
    <p class="entry-company notranslate">Initech</p>
  </article>
</div>
<div class="pagination-wrapper"><nav><div>
  <a href="?paged=1"><span>1</span></a>
  <a href="?paged=2"><span>2</span></a>
  <a href="?paged=1,042"><span>1,042</span></a>
  <a href="?paged=2"><span>Next</span></a>
</div></nav></div>
</body></html>
"""

DETAIL_HTML = """
<html><body>
<h1 class="entry-title">Newest Bulb</h1>
<div class="entry-product-details"><div><ul>
  <li><span class="label">Manufacturer</span><span class="value">Acme Lighting</span></li>
  <li><span class="label">Vendor ID</span><span class="value">0x131B</span></li>
  <li><span class="label">Product ID</span><span class="value">2A</span></li>
  <li><span class="label">Family SKU</span><span class="value">AC-100</span></li>
  <li><span class="label">Firmware Version</span><span class="value">1.4.2</span></li>
</ul></div></div>
<table class="product-certificates-table">
  <tr><td>Certification ID</td><td>CSA22001MAT40001-24</td></tr>
  <tr><td>Certification Date</td><td>2024-03-01</td></tr>
  <tr><td>Hardware Version</td><td>2</td></tr>
  <tr><td>Specification Version</td><td>1.2</td></tr>
  <tr><td>Transport Interface</td><td>Wi-Fi</td></tr>
  <tr><td>Primary Device Type ID</td><td>0x010D</td></tr>
  <tr><td>Device Type</td><td>Extended Color Light</td></tr>
  <tr><td>TIS/TRP Tested</td><td>No</td></tr>
</table>
<div>
  <h3>Application Categories</h3>
  <ul><li>Lighting</li><li>Home</li></ul>
</div>
</body></html>
"""


def _record() -> ProductRecord:
    return ProductRecord(
        url="https://csa-iot.org/csa_product/newest-bulb/",
        manufacturer="Acme",
        model="Newest Bulb",
        certificate_id="CSA22001",
        page_id=7,
        index_in_page=3,
    )


class TestExtractProducts(unittest.TestCase):
    """Verify listing card extraction."""

    def test_cards_are_reversed_oldest_first(self):
        """The last card on the page becomes index 0."""
        products = extract_products(LISTING_HTML, base_url="https://csa-iot.org/csa-iot_products/?p=1")
        self.assertEqual([p.index_in_page for p in products], [0, 1, 2])
        self.assertEqual(products[2].model, "Newest Bulb")
        self.assertEqual(products[0].manufacturer, "Initech")

    def test_fields_and_urls(self):
        """Relative links are resolved and certificate prefixes stripped."""
        products = extract_products(LISTING_HTML, base_url="https://csa-iot.org/csa-iot_products/?p=1")
        newest = products[2]
        self.assertEqual(newest.url, "https://csa-iot.org/csa_product/newest-bulb/")
        self.assertEqual(newest.certificate_id, "CSA22001")
        self.assertEqual(products[1].certificate_id, "CSA21999")
        self.assertIsNone(products[0].url)

    def test_empty_listing(self):
        """A page without the feed yields no products."""
        self.assertEqual(extract_products("<html></html>"), [])


class TestExtractTotalPages(unittest.TestCase):
    """Verify pagination parsing."""

    def test_highest_number_wins(self):
        """Non-numeric links are ignored and thousands separators removed."""
        self.assertEqual(extract_total_pages(LISTING_HTML), 1042)

    def test_no_pagination_means_one_page(self):
        """Without a pagination bar the catalog has one page."""
        self.assertEqual(extract_total_pages("<div class='post-feed'></div>"), 1)


class TestExtractProductDetails(unittest.TestCase):
    """Verify detail page extraction."""

    def test_table_and_list_fields(self):
        """Both sources are read; the table wins on overlap."""
        detail = extract_product_details(DETAIL_HTML, _record())
        self.assertEqual(detail.url, _record().url)
        self.assertEqual((detail.page_id, detail.index_in_page), (7, 3))
        self.assertEqual(detail.manufacturer, "Acme Lighting")
        self.assertEqual(detail.certification_id, "CSA22001MAT40001-24")
        self.assertEqual(detail.certification_date, "2024-03-01")
        self.assertEqual(detail.vid, 0x131B)
        self.assertEqual(detail.pid, 0x2A)
        self.assertEqual(detail.family_sku, "AC-100")
        self.assertEqual(detail.firmware_version, "1.4.2")
        self.assertEqual(detail.software_version, "1.4.2")
        self.assertEqual(detail.hardware_version, "2")
        self.assertEqual(detail.transport_interface, "Wi-Fi")
        self.assertEqual(detail.primary_device_type_id, "0x010D")
        self.assertEqual(detail.device_type, "Extended Color Light")
        self.assertEqual(detail.tis_trp_tested, "No")
        self.assertEqual(detail.specification_version, "1.2")
        self.assertEqual(detail.application_categories, ("Lighting", "Home"))

    def test_defaults_from_listing_record(self):
        """A bare page falls back to the listing data and the default type."""
        detail = extract_product_details("<html><body></body></html>", _record())
        self.assertEqual(detail.manufacturer, "Acme")
        self.assertEqual(detail.certification_id, "CSA22001")
        self.assertEqual(detail.device_type, DEFAULT_DEVICE_TYPE)
        self.assertEqual(detail.application_categories, (DEFAULT_DEVICE_TYPE,))
        self.assertIsNone(detail.vid)


class TestNumericIds(unittest.TestCase):
    """Verify vendor and product id parsing."""

    def test_parse_variants(self):
        """Prefixed, bare and placeholder values."""
        self.assertEqual(parse_numeric_id("0x131B"), 0x131B)
        self.assertEqual(parse_numeric_id("131b"), 0x131B)
        self.assertEqual(parse_numeric_id("4660"), 0x4660)
        self.assertIsNone(parse_numeric_id("n/a"))
        self.assertIsNone(parse_numeric_id("vendor"))
        self.assertIsNone(parse_numeric_id(None))

    def test_format(self):
        """Ids are shown as four upper-case hex digits."""
        self.assertEqual(format_hex_id(0x2A), "0x002A")
        self.assertIsNone(format_hex_id(None))


if __name__ == "__main__":
    unittest.main()
