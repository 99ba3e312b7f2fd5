from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .errors import PageAbortedError, PageContentExtractionError, PageOperationError
from .models import PageFetchResult, ProductDetail, ProductRecord, SitePageInfo
from .page_cache import PageCountCache
from .parsers import extract_product_details, extract_products, extract_total_pages
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class BasePageFetcher(ABC):
    """Abstract base class defining the common fetch pipeline.

    Subclasses only know how to turn a URL into HTML (_get_html) and must
    raise PageOperationError subclasses for transport problems. Everything
    else is shared:
    - cancellation check and request pacing before every request
    - extraction of listing cards, pagination and product details
    - total-page discovery cached for cache_ttl seconds
    """

    def __init__(
        self,
        listing_url: str,
        page_timeout: float = 60.0,
        detail_timeout: float = 60.0,
        cache: Optional[PageCountCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._listing_url = listing_url
        self._page_timeout = page_timeout
        self._detail_timeout = detail_timeout
        self._cache = cache if cache is not None else PageCountCache()
        self._rate_limiter = rate_limiter

    @property
    def cache(self) -> PageCountCache:
        return self._cache

    def page_url(self, page_number: int) -> str:
        sep = "&" if "?" in self._listing_url else "?"
        return f"{self._listing_url}{sep}paged={page_number}"

    def fetch_page(
        self,
        page_number: int,
        attempt: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> PageFetchResult:
        """Fetch one listing page and return its cards, oldest first."""
        if page_number < 1:
            raise ValueError("page_number must be >= 1")
        html = self._request(self.page_url(page_number), page_number, attempt, self._page_timeout, cancel_event)
        try:
            products = extract_products(html, base_url=self._listing_url)
            total_pages = extract_total_pages(html)
        except Exception as exc:  # noqa: BLE001
            raise PageContentExtractionError(f"could not parse listing: {exc}", page_number, attempt) from exc
        if not products:
            raise PageContentExtractionError("no product cards on page", page_number, attempt)
        return PageFetchResult(page_number=page_number, products=products, total_pages=total_pages)

    def fetch_site_info(self, force: bool = False) -> SitePageInfo:
        """Total page count and product count of the last page, cached unless force is set."""
        return self._cache.get_or_fetch(self._discover_site_info, force=force)

    def _discover_site_info(self) -> SitePageInfo:
        first = self.fetch_page(1)
        total_pages = max(1, first.total_pages or 1)
        if total_pages == 1:
            last_count = len(first.products)
        else:
            last_count = len(self.fetch_page(total_pages).products)
        logger.info("site has %d pages, last page holds %d products", total_pages, last_count)
        return SitePageInfo(total_pages=total_pages, last_page_product_count=last_count, fetched_at=self._cache.now())

    def fetch_detail(
        self,
        product: ProductRecord,
        attempt: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProductDetail:
        html = self._request(product.url, None, attempt, self._detail_timeout, cancel_event)
        try:
            return extract_product_details(html, product)
        except Exception as exc:  # noqa: BLE001
            raise PageContentExtractionError(f"could not parse {product.url}: {exc}", None, attempt) from exc

    def _request(
        self,
        url: str,
        page_number: Optional[int],
        attempt: int,
        timeout: float,
        cancel_event: Optional[threading.Event],
    ) -> str:
        if cancel_event is not None and cancel_event.is_set():
            raise PageAbortedError("cancelled before request", page_number, attempt)
        if self._rate_limiter is not None:
            self._rate_limiter.acquire()
        if cancel_event is not None and cancel_event.is_set():
            raise PageAbortedError("cancelled before request", page_number, attempt)
        try:
            return self._get_html(url, page_number, attempt, timeout)
        except PageOperationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc, page_number, attempt) from exc

    def _classify(self, exc: Exception, page_number: Optional[int], attempt: int) -> PageOperationError:
        """Map an unexpected transport error into the page error taxonomy."""
        return PageContentExtractionError(f"{type(exc).__name__}: {exc}", page_number, attempt)

    @abstractmethod
    def _get_html(self, url: str, page_number: Optional[int], attempt: int, timeout: float) -> str:
        ...

    def close(self) -> None:
        """Release transport resources."""
