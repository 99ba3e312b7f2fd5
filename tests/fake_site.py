"""In-memory stand-in for the catalog site, shared by the crawl tests."""

import threading
import time

from catalog_crawler.errors import PageAbortedError, PageNavigationError
from catalog_crawler.models import PageFetchResult, ProductDetail, RawProduct, SitePageInfo


def product_url(n):
    return f"https://example.test/product/{n}"


class FakeCatalog:
    """A catalog of `total_products` items, newest on site page 1."""

    def __init__(self, total_products=29, products_per_page=12):
        self.total_products = total_products
        self.ppp = products_per_page
        self.total_pages = -(-total_products // products_per_page)
        self.last_page_count = total_products - products_per_page * (self.total_pages - 1)

    def absolute_positions(self, site_page):
        internal = self.total_pages - site_page
        if internal == 0:
            return list(range(self.last_page_count))
        start = self.ppp * internal - (self.ppp - self.last_page_count)
        return list(range(start, start + self.ppp))

    def page_products(self, site_page):
        return [
            RawProduct(
                url=product_url(n),
                manufacturer=f"Maker {n % 7}",
                model=f"Model {n}",
                certificate_id=f"CSA{n:05d}",
                index_in_page=i,
            )
            for i, n in enumerate(self.absolute_positions(site_page))
        ]


class FakeFetcher:
    """Implements the fetcher interface over a FakeCatalog.

    fail_times maps a site page to how many leading attempts fail;
    always_fail lists pages that never succeed; short_pages maps a site
    page to how many cards it returns.
    """

    def __init__(self, catalog, fail_times=None, always_fail=(), short_pages=None, delay=0.0,
                 site_info_error=None, on_fetch=None, detail_overrides=None):
        self.catalog = catalog
        self.fail_times = dict(fail_times or {})
        self.always_fail = set(always_fail)
        self.short_pages = dict(short_pages or {})
        self.delay = delay
        self.site_info_error = site_info_error
        self.on_fetch = on_fetch
        self.detail_overrides = dict(detail_overrides or {})
        self.lock = threading.Lock()
        self.page_calls = []
        self.detail_calls = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    def fetch_site_info(self, force=False):
        if self.site_info_error is not None:
            raise self.site_info_error
        return SitePageInfo(
            total_pages=self.catalog.total_pages,
            last_page_product_count=self.catalog.last_page_count,
            fetched_at=time.time(),
        )

    def fetch_page(self, page_number, attempt=1, cancel_event=None):
        if cancel_event is not None and cancel_event.is_set():
            raise PageAbortedError("cancelled", page_number, attempt)
        with self.lock:
            self.page_calls.append(page_number)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            remaining = self.fail_times.get(page_number, 0)
            if remaining:
                self.fail_times[page_number] = remaining - 1
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.on_fetch is not None:
                self.on_fetch(page_number)
            if page_number in self.always_fail or remaining:
                raise PageNavigationError("HTTP_503", page_number, attempt)
            products = self.catalog.page_products(page_number)
            if page_number in self.short_pages:
                products = products[: self.short_pages[page_number]]
            return PageFetchResult(page_number, products, self.catalog.total_pages)
        finally:
            with self.lock:
                self.active -= 1

    def fetch_detail(self, product, attempt=1, cancel_event=None):
        with self.lock:
            self.detail_calls.append(product.url)
        return ProductDetail(
            url=product.url,
            page_id=product.page_id,
            index_in_page=product.index_in_page,
            manufacturer=product.manufacturer,
            model=product.model,
            device_type=self.detail_overrides.get(product.url, "Light"),
            certification_id=product.certificate_id,
            vid=0x1234,
            pid=0x0001,
            application_categories=("Lighting",),
        )

    def close(self):
        self.closed = True
