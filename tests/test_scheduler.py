"""Tests for the ConcurrencyScheduler worker pool."""

import random
import threading
import time
import unittest

from catalog_crawler.errors import PageInitializationError
from catalog_crawler.scheduler import ConcurrencyScheduler


class _Gauge:
    """Tracks how many workers run at once."""

    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def __enter__(self):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)

    def __exit__(self, *exc):
        with self._lock:
            self.active -= 1


class TestResultOrdering(unittest.TestCase):
    """Verify results come back in input order."""

    def test_results_in_input_order(self):
        """Random completion order still yields one slot per item, in order."""
        items = list(range(40))

        def worker(item, cancel):
            time.sleep(random.uniform(0, 0.005))
            return item * 2

        results = ConcurrencyScheduler(initial_concurrency=6).run(items, worker)
        self.assertEqual(results, [i * 2 for i in items])

    def test_empty_input(self):
        """No items means no workers and an empty result."""
        self.assertEqual(ConcurrencyScheduler(3).run([], lambda item, cancel: item), [])

    def test_concurrency_larger_than_items(self):
        """Fewer items than workers is fine."""
        results = ConcurrencyScheduler(10).run(["a", "b"], lambda item, cancel: item.upper())
        self.assertEqual(results, ["A", "B"])

    def test_each_item_processed_once(self):
        """The shared counter never hands out an index twice."""
        seen = []
        lock = threading.Lock()

        def worker(item, cancel):
            with lock:
                seen.append(item)
            return item

        ConcurrencyScheduler(8).run(list(range(200)), worker)
        self.assertEqual(sorted(seen), list(range(200)))


class TestConcurrencyBound(unittest.TestCase):
    """Verify in-flight workers never exceed the limit."""

    def test_never_exceeds_initial_concurrency(self):
        """At most initial_concurrency workers run together."""
        gauge = _Gauge()

        def worker(item, cancel):
            with gauge:
                time.sleep(0.002)
            return item

        ConcurrencyScheduler(initial_concurrency=3).run(list(range(30)), worker)
        self.assertLessEqual(gauge.peak, 3)
        self.assertGreaterEqual(gauge.peak, 1)


class TestFailureHandling(unittest.TestCase):
    """Verify worker errors do not abort the pool."""

    def test_failing_item_leaves_none_slot(self):
        """An exception is recorded as a failure; other items finish."""

        def worker(item, cancel):
            if item == 3:
                raise ValueError("boom")
            return item

        with self.assertLogs("catalog_crawler.scheduler", level="ERROR"):
            results = ConcurrencyScheduler(2).run(list(range(6)), worker)
        self.assertEqual(results, [0, 1, 2, None, 4, 5])

    def test_fatal_error_retires_only_that_worker(self):
        """A fatal error stops its own loop while the remaining loops drain the queue."""
        failed = []

        def worker(item, cancel):
            if item == 0:
                failed.append(threading.current_thread().name)
                raise PageInitializationError("browser missing", item, 1)
            time.sleep(0.001)
            return item

        with self.assertLogs("catalog_crawler.scheduler", level="ERROR"):
            results = ConcurrencyScheduler(3).run(list(range(12)), worker, fatal=(PageInitializationError,))
        self.assertIsNone(results[0])
        self.assertEqual(results[1:], list(range(1, 12)))


class TestCancellation(unittest.TestCase):
    """Verify cancellation stops claiming new work without raising."""

    def test_cancel_event_stops_claims(self):
        """Setting the event mid-run leaves later slots empty."""
        cancel = threading.Event()
        items = list(range(100))

        def worker(item, ev):
            if item == 10:
                ev.set()
            time.sleep(0.001)
            return item

        results = ConcurrencyScheduler(5).run(items, worker, cancel_event=cancel)
        done = [r for r in results if r is not None]
        self.assertEqual(len(results), 100)
        self.assertLess(len(done), 100)
        self.assertIn(10, done)

    def test_should_stop_flag(self):
        """An external stop flag also ends the loops."""
        stop = threading.Event()

        def worker(item, cancel):
            if item == 5:
                stop.set()
            return item

        results = ConcurrencyScheduler(1).run(list(range(50)), worker, should_stop=stop.is_set)
        self.assertEqual(results[:6], list(range(6)))
        self.assertTrue(all(r is None for r in results[6:]))


class TestAdaptiveConcurrency(unittest.TestCase):
    """Verify adaptive adjustments stay within bounds."""

    def test_shrinks_to_minimum_on_failures(self):
        """Persistent failures shrink concurrency but never below the minimum."""
        scheduler = ConcurrencyScheduler(5, adaptive=True, min_concurrency=2, window_size=10)

        def worker(item, cancel):
            raise RuntimeError("down")

        with self.assertLogs("catalog_crawler.scheduler", level="ERROR"):
            scheduler.run(list(range(40)), worker)
        self.assertEqual(scheduler.state.current, 2)
        self.assertTrue(scheduler.adjustments)
        for old, new in scheduler.adjustments:
            self.assertGreaterEqual(new, 2)
            self.assertLessEqual(new, 5)

    def test_recovers_up_to_initial(self):
        """After failures stop, concurrency climbs back but not past initial."""
        scheduler = ConcurrencyScheduler(4, adaptive=True, min_concurrency=1, window_size=5)

        def worker(item, cancel):
            if item < 10:
                raise RuntimeError("flaky")
            return item

        with self.assertLogs("catalog_crawler.scheduler", level="ERROR"):
            scheduler.run(list(range(60)), worker)
        self.assertEqual(scheduler.state.current, 4)
        self.assertIn(max(new for _, new in scheduler.adjustments), (2, 3, 4))
        self.assertTrue(all(new <= 4 for _, new in scheduler.adjustments))

    def test_no_adjustment_before_enough_samples(self):
        """Fewer than five outcomes never move the limit."""
        scheduler = ConcurrencyScheduler(3, adaptive=True)

        def worker(item, cancel):
            raise RuntimeError("down")

        with self.assertLogs("catalog_crawler.scheduler", level="ERROR"):
            scheduler.run(list(range(4)), worker)
        self.assertEqual(scheduler.adjustments, [])
        self.assertEqual(scheduler.state.current, 3)

    def test_adjustment_is_logged_as_json(self):
        """Every adjustment is logged as one JSON object."""
        scheduler = ConcurrencyScheduler(3, adaptive=True, window_size=5)

        def worker(item, cancel):
            raise RuntimeError("down")

        with self.assertLogs("catalog_crawler.scheduler", level="INFO") as logs:
            scheduler.run(list(range(10)), worker)
        json_lines = [line for line in logs.output if '"strategy": "ReduceConcurrencyStrategy"' in line]
        self.assertTrue(json_lines)

    def test_rejects_zero_concurrency(self):
        """Initial concurrency must be positive."""
        with self.assertRaises(ValueError):
            ConcurrencyScheduler(0)


if __name__ == "__main__":
    unittest.main()
