from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Generic, Hashable, List, Optional, Sequence, Tuple, TypeVar

from .backoff import RetryPolicy
from .base import BasePageFetcher
from .config import CrawlerConfig
from .errors import CrawlAlreadyRunningError, PageContentExtractionError, PageInitializationError, is_retryable
from .indexing import PageIndexMapper
from .models import (
    CrawlerStatus,
    CrawlSummary,
    ProductDetail,
    ProductRecord,
    RawProduct,
    RetryStatus,
    SitePageInfo,
    Stage,
)
from .progress import ProgressTracker
from .scheduler import ConcurrencyScheduler
from .storage import SqliteStorage
from .tasks import TaskBoard, TaskKind, TaskStatus
from .validator import PageValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class _RoundOutcome(Generic[R]):
    def __init__(self) -> None:
        self.done: Dict[Hashable, R] = {}
        self.remaining: List[Hashable] = []


class CrawlOrchestrator:
    """Drives a two-stage crawl: listing pages first, then product details.

    Status moves IDLE -> LIST_COLLECTION -> DETAIL_COLLECTION -> COMPLETED.
    A stage-level error ends in FAILED; stop() passes through STOPPING and
    still ends in COMPLETED with whatever was collected. Only one crawl may
    run per process.
    """

    _run_lock = threading.Lock()

    def __init__(
        self,
        config: CrawlerConfig,
        storage: SqliteStorage,
        fetcher: BasePageFetcher,
        progress: Optional[ProgressTracker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        validator: Optional[PageValidator] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._storage = storage
        self._fetcher = fetcher
        self._progress = progress if progress is not None else ProgressTracker(clock=clock)
        self._retry = retry_policy if retry_policy is not None else RetryPolicy()
        self._validator = validator if validator is not None else PageValidator()
        self._clock = clock

        self._cancel = threading.Event()
        self._stop_requested = threading.Event()
        self._status = CrawlerStatus.IDLE
        self._status_lock = threading.Lock()
        self._board = TaskBoard(listener=self._progress.task_changed)

        # Per site page, products seen so far merged by URL across attempts.
        self._page_products: Dict[int, Dict[str, RawProduct]] = {}
        self._page_lock = threading.Lock()
        self._discovered: Dict[str, ProductRecord] = {}
        self._page_errors: Dict[int, str] = {}

    @classmethod
    def is_running(cls) -> bool:
        return cls._run_lock.locked()

    @property
    def status(self) -> CrawlerStatus:
        with self._status_lock:
            return self._status

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    @property
    def tasks(self) -> TaskBoard:
        return self._board

    def _set_status(self, status: CrawlerStatus, message: Optional[str] = None) -> None:
        with self._status_lock:
            self._status = status
        logger.info("crawler status -> %s%s", status.value, f" ({message})" if message else "")
        self._progress.set_status(status, message)

    def stop(self) -> None:
        """Request cooperative cancellation; in-flight requests finish or time out."""
        self._stop_requested.set()
        self._cancel.set()
        if self.status in (CrawlerStatus.LIST_COLLECTION, CrawlerStatus.DETAIL_COLLECTION):
            self._set_status(CrawlerStatus.STOPPING)

    def _halted(self) -> bool:
        return self._stop_requested.is_set() or self._cancel.is_set()

    def _should_abort(self, attempt: int, exc: BaseException) -> bool:
        return self._halted() or not is_retryable(exc)

    def run(self) -> CrawlSummary:
        if not CrawlOrchestrator._run_lock.acquire(blocking=False):
            raise CrawlAlreadyRunningError("a crawl is already running in this process")
        try:
            self._cancel.clear()
            self._stop_requested.clear()
            self._board.clear()
            self._page_products.clear()
            self._discovered.clear()
            self._page_errors.clear()
            return self._run()
        finally:
            CrawlOrchestrator._run_lock.release()

    def _run(self) -> CrawlSummary:
        cfg = self._config
        self._set_status(CrawlerStatus.LIST_COLLECTION)
        try:
            info = self._fetcher.fetch_site_info()
        except Exception as exc:  # noqa: BLE001
            return self._fail(f"could not read total page count: {exc}")

        try:
            mapper = PageIndexMapper(info.total_pages, info.last_page_product_count, cfg.products_per_page)
            known_urls = self._storage.product_urls()
            list_stats = self._collect_list(info, mapper)
        except Exception as exc:  # noqa: BLE001
            logger.exception("list collection failed")
            self._progress.fail_stage(str(exc))
            return self._fail(str(exc), total_pages=info.total_pages)

        summary = CrawlSummary(status=CrawlerStatus.COMPLETED, total_pages=info.total_pages, **list_stats)
        if self._halted():
            return self._finish(replace(summary, stopped=True))

        self._set_status(CrawlerStatus.DETAIL_COLLECTION)
        try:
            detail_stats = self._collect_details(self._detail_targets(known_urls))
        except Exception as exc:  # noqa: BLE001
            logger.exception("detail collection failed")
            self._progress.fail_stage(str(exc))
            return self._fail(str(exc), total_pages=info.total_pages, **list_stats)
        return self._finish(replace(summary, stopped=self._halted(), **detail_stats))

    def _fail(self, message: str, **stats) -> CrawlSummary:
        self._set_status(CrawlerStatus.FAILED, message)
        return CrawlSummary(status=CrawlerStatus.FAILED, error=message, **stats)

    def _finish(self, summary: CrawlSummary) -> CrawlSummary:
        self._set_status(CrawlerStatus.COMPLETED, "stopped by request" if summary.stopped else None)
        logger.info(
            "crawl finished: %d/%d pages complete, %d new products, %d new and %d updated details",
            summary.pages_completed,
            summary.pages_attempted,
            summary.new_products,
            summary.new_details,
            summary.updated_details,
        )
        return summary

    # list stage

    def pending_site_pages(self, info: SitePageInfo, mapper: PageIndexMapper) -> List[int]:
        """Site pages whose slots are not all stored yet, oldest first."""
        existing = self._storage.existing_slots()
        last = info.total_pages
        if self._config.page_range_limit:
            last = min(last, self._config.page_range_limit)
        pending = []
        for site_page in range(last, 0, -1):
            if not all(slot in existing for slot in mapper.slots_for_site_page(site_page)):
                pending.append(site_page)
        return pending

    def _batches(self, pages: List[int]) -> List[List[int]]:
        if not self._config.enable_batch_processing:
            return [pages] if pages else []
        size = self._config.batch_size
        return [pages[i : i + size] for i in range(0, len(pages), size)]

    def _collect_list(self, info: SitePageInfo, mapper: PageIndexMapper) -> Dict[str, object]:
        cfg = self._config
        pending = self.pending_site_pages(info, mapper)
        batches = self._batches(pending)
        logger.info("%d of %d site pages need collecting in %d batches", len(pending), info.total_pages, len(batches))
        self._progress.start_stage(Stage.LIST, len(pending), total_batches=len(batches))
        for site_page in pending:
            self._board.register(_page_task_id(site_page), TaskKind.PAGE)

        completed: List[int] = []
        new_products = collected = 0
        for number, batch in enumerate(batches, start=1):
            if self._halted():
                break
            if number > 1 and cfg.batch_delay > 0 and self._cancel.wait(cfg.batch_delay):
                break
            self._progress.set_batch(number, len(batches))
            logger.info("batch %d/%d: site pages %d..%d", number, len(batches), batch[0], batch[-1])

            def worker(site_page: int, cancel: threading.Event) -> Tuple[int, int]:
                return self._crawl_site_page(site_page, info, mapper, cancel)

            outcome = self._run_with_rounds(
                Stage.LIST,
                batch,
                worker,
                key=lambda p: p,
                concurrency=cfg.initial_concurrency,
                task_id=_page_task_id,
            )
            for site_page in batch:
                if site_page in outcome.done:
                    completed.append(site_page)
                    inserted, stored = outcome.done[site_page]
                    new_products += inserted
                    collected += stored

        incomplete = tuple(sorted(set(pending) - set(completed), reverse=True))
        for site_page in incomplete:
            logger.warning("site page %d incomplete: %s", site_page, self._page_errors.get(site_page, "not attempted"))
        if self._halted():
            self._progress.complete_stage("stopped by request")
        else:
            self._progress.complete_stage()
        return dict(
            pages_attempted=len(pending),
            pages_completed=len(completed),
            incomplete_pages=incomplete,
            products_collected=collected,
            new_products=new_products,
        )

    def _merge_page(self, site_page: int, products: Sequence[RawProduct]) -> List[RawProduct]:
        with self._page_lock:
            merged = self._page_products.setdefault(site_page, {})
            for product in products:
                merged[product.url] = product
            return sorted(merged.values(), key=lambda p: p.index_in_page)

    def _crawl_site_page(
        self,
        site_page: int,
        info: SitePageInfo,
        mapper: PageIndexMapper,
        cancel: threading.Event,
    ) -> Tuple[int, int]:
        """Fetch, validate and persist one site page. Returns (inserted, stored)."""
        cfg = self._config
        task_id = _page_task_id(site_page)
        self._board.update(task_id, TaskStatus.RUNNING)
        expected = mapper.expected_count_for_site_page(site_page)
        is_last = site_page == info.total_pages

        def attempt(number: int) -> List[RawProduct]:
            result = self._fetcher.fetch_page(site_page, number, cancel)
            valid, invalid = self._validator.validate_product_data(result.products)
            if invalid:
                logger.debug("site page %d: dropped %d cards without identity", site_page, len(invalid))
            fresh = self._validator.validate(
                site_page,
                valid,
                is_last_page=is_last,
                expected_count=expected,
                last_page_expected_count=info.last_page_product_count if is_last else None,
            )
            if fresh.is_complete:
                with self._page_lock:
                    self._page_products[site_page] = {p.url: p for p in valid}
                return list(valid)
            merged = self._merge_page(site_page, valid)
            check = self._validator.validate(
                site_page,
                merged,
                is_last_page=is_last,
                expected_count=expected,
                last_page_expected_count=info.last_page_product_count if is_last else None,
            )
            if not check.is_complete:
                raise PageContentExtractionError(check.reason or "incomplete page", site_page, number)
            return merged

        def on_retry(number: int, delay: float, exc: BaseException) -> None:
            logger.info("site page %d attempt %d failed (%s); retry in %.1fs", site_page, number, exc, delay)

        try:
            products = self._retry.execute(
                attempt,
                max_retries=cfg.product_list_retry_count,
                base_delay=cfg.base_retry_delay,
                max_delay=cfg.max_retry_delay,
                on_retry=on_retry,
                should_abort=self._should_abort,
            )
        except Exception as exc:
            with self._page_lock:
                self._page_errors[site_page] = str(exc)
            self._board.update(task_id, TaskStatus.FAILED, str(exc))
            raise

        records = mapper.to_records(site_page, products)
        inserted, _ = self._storage.upsert_products(records)
        with self._page_lock:
            for record in records:
                self._discovered[record.url] = record
            self._page_errors.pop(site_page, None)
        self._board.update(task_id, TaskStatus.SUCCESS)
        self._progress.record_processed(new_count=inserted)
        return inserted, len(records)

    def _run_with_rounds(
        self,
        stage: Stage,
        items: Sequence[T],
        worker: Callable[[T, threading.Event], R],
        key: Callable[[T], Hashable],
        concurrency: int,
        task_id: Callable[[T], str],
    ) -> _RoundOutcome[R]:
        """Run items once at full concurrency, then retry failures in rounds at retry concurrency."""
        cfg = self._config
        outcome: _RoundOutcome[R] = _RoundOutcome()
        scheduler = ConcurrencyScheduler(
            concurrency,
            adaptive=cfg.adaptive_concurrency,
            min_concurrency=cfg.min_concurrency,
            window_size=cfg.success_window_size,
            error_threshold=cfg.error_threshold,
        )
        results = scheduler.run(
            items, worker, cancel_event=self._cancel, should_stop=self._halted, fatal=(PageInitializationError,)
        )
        for item, result in zip(items, results):
            if result is not None:
                outcome.done[key(item)] = result
        remaining = [item for item in items if key(item) not in outcome.done]

        started = self._clock()
        round_number = 0
        while remaining and round_number < cfg.batch_retry_limit and not self._halted():
            round_number += 1
            status = RetryStatus(
                stage=stage,
                current_attempt=round_number,
                max_attempts=cfg.batch_retry_limit,
                remaining_items=len(remaining),
                total_items=len(items),
                start_time=started,
                item_ids=tuple(task_id(item) for item in remaining),
            )
            self._progress.update_retry(status)
            logger.info("%s retry round %d/%d for %d items", stage.value, round_number, cfg.batch_retry_limit, len(remaining))
            for item in remaining:
                self._board.update(task_id(item), TaskStatus.PENDING)
            retry_scheduler = ConcurrencyScheduler(cfg.retry_concurrency, min_concurrency=1)
            results = retry_scheduler.run(
                remaining, worker, cancel_event=self._cancel, should_stop=self._halted, fatal=(PageInitializationError,)
            )
            for item, result in zip(remaining, results):
                if result is not None:
                    outcome.done[key(item)] = result
            remaining = [item for item in remaining if key(item) not in outcome.done]
            self._progress.update_retry(
                replace(status, remaining_items=len(remaining), item_ids=tuple(task_id(i) for i in remaining))
            )
        if round_number:
            self._progress.update_retry(None)
        halted = self._halted()
        for item in remaining:
            # Items never attempted before a stop are not resolved.
            if not halted or self._board.get(task_id(item)).status == TaskStatus.FAILED:
                self._progress.record_processed(failed=True)
        outcome.remaining = [key(item) for item in remaining]
        return outcome

    # detail stage

    def _detail_targets(self, known_urls: set) -> List[ProductRecord]:
        """Products discovered in this run that are new, plus any stored product still lacking details."""
        if self._config.refresh_existing_details:
            targets = dict(self._discovered)
        else:
            targets = {url: r for url, r in self._discovered.items() if url not in known_urls}
        for record in self._storage.products_missing_details():
            targets.setdefault(record.url, record)
        return sorted(targets.values(), key=lambda r: (r.page_id, r.index_in_page))

    def _collect_details(self, targets: List[ProductRecord]) -> Dict[str, object]:
        cfg = self._config
        self._progress.start_stage(Stage.DETAIL, len(targets))
        for record in targets:
            self._board.register(_detail_task_id(record), TaskKind.PRODUCT_DETAIL)
        counts = {"new": 0, "updated": 0}
        counts_lock = threading.Lock()

        def worker(record: ProductRecord, cancel: threading.Event) -> ProductDetail:
            detail, is_new, changed = self._crawl_detail(record, cancel)
            with counts_lock:
                if is_new:
                    counts["new"] += 1
                elif changed:
                    counts["updated"] += 1
            return detail

        outcome = self._run_with_rounds(
            Stage.DETAIL,
            targets,
            worker,
            key=lambda r: r.url,
            concurrency=cfg.detail_concurrency,
            task_id=_detail_task_id,
        )
        if self._halted():
            self._progress.complete_stage("stopped by request")
        else:
            self._progress.complete_stage()
        return dict(
            details_attempted=len(targets),
            details_collected=len(outcome.done),
            new_details=counts["new"],
            updated_details=counts["updated"],
            failed_details=tuple(outcome.remaining),
        )

    def _crawl_detail(self, record: ProductRecord, cancel: threading.Event) -> Tuple[ProductDetail, bool, bool]:
        cfg = self._config
        task_id = _detail_task_id(record)
        self._board.update(task_id, TaskStatus.RUNNING)
        try:
            detail = self._retry.execute(
                lambda number: self._fetcher.fetch_detail(record, number, cancel),
                max_retries=cfg.product_detail_retry_count,
                base_delay=cfg.base_retry_delay,
                max_delay=cfg.max_retry_delay,
                should_abort=self._should_abort,
            )
        except Exception as exc:
            self._board.update(task_id, TaskStatus.FAILED, str(exc))
            raise
        existing = self._storage.get_detail(record.url)
        self._storage.upsert_detail(detail)
        is_new = existing is None
        changed = not is_new and detail.differs_from(existing)
        self._board.update(task_id, TaskStatus.SUCCESS)
        self._progress.record_processed(new_count=int(is_new), updated_count=int(changed))
        return detail, is_new, changed


def _page_task_id(site_page: int) -> str:
    return f"page-{site_page}"


def _detail_task_id(record: ProductRecord) -> str:
    return f"detail-{record.url}"
