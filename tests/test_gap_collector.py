"""Tests for refilling gaps from the live (here: fake) catalog."""

import threading
import unittest

from fake_site import FakeCatalog, FakeFetcher

from catalog_crawler.errors import PageNavigationError
from catalog_crawler.gap_collector import GapCollector, format_collection_report
from catalog_crawler.gap_detector import GapDetector
from catalog_crawler.indexing import PageIndexMapper
from catalog_crawler.models import ProductDetail
from catalog_crawler.storage import SqliteStorage


def _seed(storage, catalog, skip=()):
    """Store the whole catalog except the given (page_id, index) slots."""
    mapper = PageIndexMapper(catalog.total_pages, catalog.last_page_count, catalog.ppp)
    records = []
    for site_page in range(1, catalog.total_pages + 1):
        for record in mapper.to_records(site_page, catalog.page_products(site_page)):
            if (record.page_id, record.index_in_page) not in skip:
                records.append(record)
    storage.upsert_products(records)


class TestCollectMissingProducts(unittest.TestCase):
    """29 products over 3 site pages; page id 0 lost, page id 1 missing two positions."""

    def setUp(self):
        self.catalog = FakeCatalog(total_products=29)
        self.storage = SqliteStorage()
        skip = {(0, i) for i in range(12)} | {(1, 3), (1, 4)}
        _seed(self.storage, self.catalog, skip)
        self.detector = GapDetector(self.storage, last_page_expected_count=5)
        self.collector = GapCollector(self.storage, sleep=lambda seconds: None)

    def tearDown(self):
        self.storage.close()

    def _collect(self, fetcher, **kwargs):
        kwargs.setdefault("max_concurrent_pages", 1)
        return self.collector.collect_missing_products(self.detector.detect_missing_products(), fetcher, **kwargs)

    def test_fills_every_gap(self):
        """After collection a new scan finds nothing."""
        result = self._collect(FakeFetcher(self.catalog))
        self.assertTrue(result.success)
        self.assertEqual(result.collected, 14)
        self.assertEqual(result.collected_pages, [0, 1])
        self.assertEqual(self.detector.detect_missing_products().gaps, [])
        self.assertEqual(self.storage.count_products(), 29)

    def test_partial_page_first_and_site_pages_fetched_once(self):
        """Page id 1 (site pages 2 and 1) goes before page id 0 (site pages 3 and 2)."""
        fetcher = FakeFetcher(self.catalog)
        self._collect(fetcher)
        self.assertEqual(fetcher.page_calls, [2, 1, 3])

    def test_failed_page_is_reported(self):
        """A site page that never loads leaves its page id open, with an error."""
        fetcher = FakeFetcher(self.catalog, always_fail={3})
        result = self._collect(fetcher, max_retries=2)
        self.assertFalse(result.success)
        self.assertEqual(result.failed_pages, [0])
        self.assertEqual(result.collected_pages, [1])
        self.assertEqual(fetcher.page_calls.count(3), 3)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("page id 0", result.errors[0])
        self.assertEqual(self.detector.detect_missing_products().missing_page_ids, [0])

    def test_short_site_page_leaves_positions_missing(self):
        """Positions the site did not deliver are counted as failures."""
        fetcher = FakeFetcher(self.catalog, short_pages={3: 2})
        result = self._collect(fetcher)
        self.assertEqual(result.failed_pages, [0])
        self.assertIn("3 positions still missing [2, 3, 4]", result.errors[0])
        self.assertEqual(self.detector.detect_missing_products().gap_for(0).missing_indices, (2, 3, 4))

    def test_site_info_failure(self):
        """Without the site layout every gap counts as failed."""
        fetcher = FakeFetcher(self.catalog, site_info_error=PageNavigationError("HTTP_503"))
        result = self._collect(fetcher)
        self.assertEqual(result.failed, 2)
        self.assertEqual(fetcher.page_calls, [])
        self.assertIn("could not read site layout", result.errors[0])

    def test_gap_beyond_site_is_skipped(self):
        """Page ids the site no longer has are skipped, not fetched."""
        fetcher = FakeFetcher(self.catalog)
        gaps = self.detector.detect_missing_products_in_range(3, 4)
        result = self.collector.collect_missing_products(gaps, fetcher, max_concurrent_pages=1)
        self.assertEqual(result.skipped, 2)
        self.assertEqual(fetcher.page_calls, [])
        self.assertFalse(result.success)

    def test_cancel_before_start_skips_every_gap(self):
        """Gaps never claimed before a cancel are skipped, with a reason each."""
        cancel = threading.Event()
        cancel.set()
        collector = GapCollector(self.storage, sleep=lambda seconds: None, cancel_event=cancel)
        fetcher = FakeFetcher(self.catalog)
        result = collector.collect_missing_products(self.detector.detect_missing_products(), fetcher, max_concurrent_pages=1)
        self.assertEqual(result.skipped, 2)
        self.assertEqual(result.collected, 0)
        self.assertEqual(fetcher.page_calls, [])
        self.assertFalse(result.success)
        self.assertIn("page id 0: not attempted, collection was cancelled", result.errors)
        self.assertIn("page id 1: not attempted, collection was cancelled", result.errors)

    def test_cancel_mid_run_skips_the_rest(self):
        """A cancel during the first gap leaves the next one skipped."""
        cancel = threading.Event()
        collector = GapCollector(self.storage, sleep=lambda seconds: None, cancel_event=cancel)
        fetcher = FakeFetcher(self.catalog, on_fetch=lambda page: cancel.set())
        result = collector.collect_missing_products(self.detector.detect_missing_products(), fetcher, max_concurrent_pages=1)
        self.assertEqual(result.skipped, 1)
        self.assertEqual(result.failed_pages, [1])
        self.assertIn("page id 0: not attempted, collection was cancelled", result.errors)
        self.assertNotIn(3, fetcher.page_calls)

    def test_collect_page_gaps(self):
        """A single page id can be refilled on its own."""
        fetcher = FakeFetcher(self.catalog)
        result = self.collector.collect_page_gaps(1, fetcher)
        self.assertEqual(result.collected, 2)
        self.assertEqual(fetcher.page_calls, [2, 1])
        self.assertEqual(self.storage.indices_by_page(1, 1), {1: list(range(12))})

    def test_report(self):
        """The report lists closed and open page ids."""
        result = self._collect(FakeFetcher(self.catalog, always_fail={3}), max_retries=0)
        report = format_collection_report(result)
        self.assertIn("closed page ids: 1", report)
        self.assertIn("open page ids:   0", report)


class TestCollectMissingDetails(unittest.TestCase):
    """Verify detail refill."""

    def setUp(self):
        self.catalog = FakeCatalog(total_products=29)
        self.storage = SqliteStorage()
        _seed(self.storage, self.catalog)

    def tearDown(self):
        self.storage.close()

    def test_fetches_only_missing(self):
        """Products that already have details are not fetched again."""
        first = self.storage.all_products()[0]
        self.storage.upsert_detail(ProductDetail(url=first.url, page_id=first.page_id, index_in_page=first.index_in_page))
        fetcher = FakeFetcher(self.catalog)
        result = GapCollector(self.storage, sleep=lambda seconds: None).collect_missing_details(fetcher)
        self.assertEqual(result.collected, 28)
        self.assertNotIn(first.url, fetcher.detail_calls)
        self.assertEqual(self.storage.count_details(), 29)
        self.assertEqual(self.storage.products_missing_details(), [])

    def test_cancelled_details_are_skipped(self):
        """Products left unfetched after a cancel count as skipped."""
        cancel = threading.Event()
        cancel.set()
        fetcher = FakeFetcher(self.catalog)
        result = GapCollector(self.storage, sleep=lambda seconds: None, cancel_event=cancel).collect_missing_details(fetcher)
        self.assertEqual(result.skipped, 29)
        self.assertEqual(result.collected, 0)
        self.assertEqual(fetcher.detail_calls, [])
        self.assertTrue(all(e.endswith("not attempted, collection was cancelled") for e in result.errors))


if __name__ == "__main__":
    unittest.main()
