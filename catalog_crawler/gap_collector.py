from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set

from .backoff import RetryPolicy
from .base import BasePageFetcher
from .errors import is_retryable
from .gap_detector import GapDetector
from .indexing import PageIndexMapper
from .models import GapCollectionResult, GapDetectionResult, PageGap, ProductRecord, RawProduct
from .scheduler import ConcurrencyScheduler
from .storage import SqliteStorage
from .validator import PageValidator

logger = logging.getLogger(__name__)


def _collection_order(gaps: List[PageGap]) -> List[PageGap]:
    """Partially filled pages first, fewest missing first; then fully missing pages."""
    return sorted(gaps, key=lambda g: (g.is_fully_missing, len(g.missing_indices), g.page_id))


class GapCollector:
    """Re-fetches exactly the positions a gap scan reported missing.

    Errors never escape: each failure is added to the result's error list,
    because partly closing the gaps is the normal outcome. Callers re-run
    gap detection afterwards to see what is left.
    """

    def __init__(
        self,
        storage: SqliteStorage,
        products_per_page: int = 12,
        retry_policy: Optional[RetryPolicy] = None,
        base_retry_delay: float = 2.5,
        max_retry_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._storage = storage
        self._ppp = products_per_page
        self._retry = retry_policy if retry_policy is not None else RetryPolicy(sleep=sleep)
        self._base_delay = base_retry_delay
        self._max_delay = max_retry_delay
        self._sleep = sleep
        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self._validator = PageValidator()

    def _should_abort(self, attempt: int, exc: BaseException) -> bool:
        return self._cancel.is_set() or not is_retryable(exc)

    def collect_missing_products(
        self,
        gap_result: GapDetectionResult,
        fetcher: BasePageFetcher,
        max_concurrent_pages: int = 3,
        max_retries: int = 2,
        delay_between_pages: float = 1.0,
    ) -> GapCollectionResult:
        result = GapCollectionResult()
        gaps = _collection_order(list(gap_result.gaps))
        if not gaps:
            logger.info("no gaps to collect")
            return result

        try:
            info = fetcher.fetch_site_info()
            mapper = PageIndexMapper(info.total_pages, info.last_page_product_count, self._ppp)
        except Exception as exc:  # noqa: BLE001
            result.failed = len(gaps)
            result.failed_pages.extend(g.page_id for g in gaps)
            result.errors.append(f"could not read site layout: {exc}")
            return result

        lock = threading.Lock()
        site_pages: Dict[int, List[RawProduct]] = {}

        def load_site_page(site_page: int) -> List[RawProduct]:
            with lock:
                if site_page in site_pages:
                    return site_pages[site_page]
            fetched = self._retry.execute(
                lambda attempt: fetcher.fetch_page(site_page, attempt, self._cancel),
                max_retries=max_retries,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                should_abort=self._should_abort,
            )
            valid, _ = self._validator.validate_product_data(fetched.products)
            with lock:
                site_pages[site_page] = valid
            return valid

        def worker(gap: PageGap, cancel: threading.Event) -> bool:
            try:
                self._collect_gap(gap, mapper, load_site_page, result, lock)
            except Exception as exc:  # noqa: BLE001
                logger.warning("page id %d: collection failed: %s", gap.page_id, exc)
                with lock:
                    result.failed += 1
                    result.failed_pages.append(gap.page_id)
                    result.errors.append(f"page id {gap.page_id}: {exc}")
            if delay_between_pages > 0 and not cancel.is_set():
                self._sleep(delay_between_pages)
            return True

        logger.info(
            "collecting %d gap pages (%d products) with %d workers",
            len(gaps),
            sum(len(g.missing_indices) for g in gaps),
            max_concurrent_pages,
        )
        done = ConcurrencyScheduler(max(1, max_concurrent_pages)).run(gaps, worker, cancel_event=self._cancel)
        for gap, slot in zip(gaps, done):
            if slot is None:
                result.skipped += 1
                result.errors.append(f"page id {gap.page_id}: not attempted, collection was cancelled")
        result.collected_pages.sort()
        result.failed_pages.sort()
        return result

    def _collect_gap(
        self,
        gap: PageGap,
        mapper: PageIndexMapper,
        load_site_page: Callable[[int], List[RawProduct]],
        result: GapCollectionResult,
        lock: threading.Lock,
    ) -> None:
        if gap.page_id > mapper.max_page_id:
            with lock:
                result.skipped += 1
                result.errors.append(f"page id {gap.page_id}: beyond the site's last page id {mapper.max_page_id}")
            return

        wanted: Set[int] = set(gap.missing_indices)
        found: List[ProductRecord] = []
        for site_page in mapper.site_pages_for_page_id(gap.page_id):
            for record in mapper.to_records(site_page, load_site_page(site_page)):
                if record.page_id == gap.page_id and record.index_in_page in wanted:
                    found.append(record)

        if found:
            self._storage.upsert_products(found)
        still_missing = sorted(wanted - {r.index_in_page for r in found})
        with lock:
            result.collected += len(found)
            if still_missing:
                result.failed += 1
                result.failed_pages.append(gap.page_id)
                result.errors.append(
                    f"page id {gap.page_id}: {len(still_missing)} positions still missing {still_missing}"
                )
            else:
                result.collected_pages.append(gap.page_id)
        logger.info("page id %d: filled %d of %d missing positions", gap.page_id, len(found), len(wanted))

    def collect_page_gaps(
        self,
        page_id: int,
        fetcher: BasePageFetcher,
        max_retries: int = 2,
    ) -> GapCollectionResult:
        """Detect and fill the gaps of a single page id."""
        mapper = None
        try:
            info = fetcher.fetch_site_info()
            mapper = PageIndexMapper(info.total_pages, info.last_page_product_count, self._ppp)
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not read site layout (%s); expecting a full page", exc)
        detector = GapDetector(self._storage, self._ppp, mapper=mapper)
        gap_result = detector.detect_missing_products_in_range(page_id, page_id)
        return self.collect_missing_products(
            gap_result, fetcher, max_concurrent_pages=1, max_retries=max_retries, delay_between_pages=0
        )

    def collect_missing_details(
        self,
        fetcher: BasePageFetcher,
        max_concurrent: int = 3,
        max_retries: int = 2,
    ) -> GapCollectionResult:
        """Fetch details for products that have a summary row but no detail row."""
        result = GapCollectionResult()
        targets = self._storage.products_missing_details()
        lock = threading.Lock()

        def worker(record: ProductRecord, cancel: threading.Event) -> bool:
            try:
                detail = self._retry.execute(
                    lambda attempt: fetcher.fetch_detail(record, attempt, cancel),
                    max_retries=max_retries,
                    base_delay=self._base_delay,
                    max_delay=self._max_delay,
                    should_abort=self._should_abort,
                )
                self._storage.upsert_detail(detail)
            except Exception as exc:  # noqa: BLE001
                with lock:
                    result.failed += 1
                    result.errors.append(f"{record.url}: {exc}")
                return True
            with lock:
                result.collected += 1
            return True

        if targets:
            logger.info("collecting details for %d products", len(targets))
            done = ConcurrencyScheduler(max(1, max_concurrent)).run(targets, worker, cancel_event=self._cancel)
            for record, slot in zip(targets, done):
                if slot is None:
                    result.skipped += 1
                    result.errors.append(f"{record.url}: not attempted, collection was cancelled")
        return result


def format_collection_report(result: GapCollectionResult) -> str:
    lines = [
        "================= collection report =================",
        f"collected: {result.collected}",
        f"failed:    {result.failed}",
        f"skipped:   {result.skipped}",
    ]
    if result.collected_pages:
        lines.append(f"closed page ids: {', '.join(map(str, result.collected_pages))}")
    if result.failed_pages:
        lines.append(f"open page ids:   {', '.join(map(str, result.failed_pages))}")
    if result.errors:
        lines.append(f"errors ({len(result.errors)}):")
        lines.extend(f"  - {e}" for e in result.errors)
    lines.append("=" * 53)
    return "\n".join(lines)
