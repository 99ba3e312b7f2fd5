from __future__ import annotations

from typing import List, Sequence, Tuple

from .models import ProductRecord, RawProduct


class PageIndexMapper:
    """Maps site pages (1-based, newest first) onto stable local page ids.

    Local page id 0 holds the oldest products. Positions are counted from
    the oldest product, so they stay put when the site prepends new items.
    Only the highest local page id can be short of products_per_page.
    """

    def __init__(self, total_pages: int, last_page_product_count: int, products_per_page: int = 12) -> None:
        if products_per_page < 1:
            raise ValueError("products_per_page must be >= 1")
        if total_pages < 0:
            raise ValueError("total_pages must be >= 0")
        if total_pages and not 0 < last_page_product_count <= products_per_page:
            raise ValueError(
                f"last_page_product_count must be in 1..{products_per_page}, got {last_page_product_count}"
            )
        self.total_pages = total_pages
        self.last_page_product_count = last_page_product_count if total_pages else 0
        self.products_per_page = products_per_page

    @property
    def offset(self) -> int:
        if self.last_page_product_count == self.products_per_page:
            return 0
        return self.products_per_page - self.last_page_product_count

    @property
    def total_products(self) -> int:
        if not self.total_pages:
            return 0
        return self.products_per_page * (self.total_pages - 1) + self.last_page_product_count

    @property
    def max_page_id(self) -> int:
        """Highest local page id, or -1 for an empty catalog."""
        return (self.total_products - 1) // self.products_per_page if self.total_products else -1

    def expected_count_for_page_id(self, page_id: int) -> int:
        if page_id < 0 or page_id > self.max_page_id:
            return 0
        if page_id < self.max_page_id:
            return self.products_per_page
        return self.total_products - page_id * self.products_per_page

    def expected_count_for_site_page(self, site_page: int) -> int:
        self._check_site_page(site_page)
        if site_page == self.total_pages:
            return self.last_page_product_count
        return self.products_per_page

    def _check_site_page(self, site_page: int) -> None:
        if not 1 <= site_page <= self.total_pages:
            raise ValueError(f"site page {site_page} outside 1..{self.total_pages}")

    def _absolute(self, site_page: int, site_index: int) -> int:
        internal = self.total_pages - site_page
        if internal == 0:
            return site_index
        return self.products_per_page * internal + site_index - self.offset

    def to_local(self, site_page: int, site_index: int) -> Tuple[int, int]:
        """Return (page_id, index_in_page) for a card's position on a site page."""
        self._check_site_page(site_page)
        absolute = self._absolute(site_page, site_index)
        return absolute // self.products_per_page, absolute % self.products_per_page

    def slots_for_site_page(self, site_page: int) -> List[Tuple[int, int]]:
        """Every (page_id, index_in_page) a complete copy of site_page fills."""
        return [self.to_local(site_page, i) for i in range(self.expected_count_for_site_page(site_page))]

    def _site_page_of_absolute(self, absolute: int) -> int:
        last = self.last_page_product_count
        internal = 0 if absolute < last else 1 + (absolute - last) // self.products_per_page
        return self.total_pages - internal

    def site_pages_for_page_id(self, page_id: int) -> List[int]:
        """Site pages holding the products of a local page id, oldest first (one or two pages)."""
        if page_id < 0 or page_id > self.max_page_id:
            return []
        first = page_id * self.products_per_page
        last = first + self.expected_count_for_page_id(page_id) - 1
        pages = [self._site_page_of_absolute(first), self._site_page_of_absolute(last)]
        return sorted(set(pages), reverse=True)

    def to_records(self, site_page: int, products: Sequence[RawProduct]) -> List[ProductRecord]:
        """Place raw cards of one site page at their local positions; cards without a URL are dropped."""
        records: List[ProductRecord] = []
        for product in products:
            if not product.url:
                continue
            page_id, index_in_page = self.to_local(site_page, product.index_in_page)
            records.append(
                ProductRecord(
                    url=product.url,
                    manufacturer=product.manufacturer,
                    model=product.model,
                    certificate_id=product.certificate_id,
                    page_id=page_id,
                    index_in_page=index_in_page,
                )
            )
        return records
