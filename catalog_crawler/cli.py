from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, Tuple

from .base import BasePageFetcher
from .config import CRAWLER_TYPES, CrawlerConfig, load_config
from .errors import CrawlerError
from .factory import FetcherFactory
from .gap_collector import GapCollector, format_collection_report
from .gap_detector import GapDetector, format_gap_report
from .indexing import PageIndexMapper
from .models import CrawlerStatus, GapDetectionResult
from .orchestrator import CrawlOrchestrator
from .progress import STAGE_COMPLETED, STAGE_FAILED, STAGE_STARTED, ProgressEvent
from .storage import SqliteStorage

logger = logging.getLogger(__name__)


def _print_stage_event(event: ProgressEvent) -> None:
    if event.kind not in (STAGE_STARTED, STAGE_COMPLETED, STAGE_FAILED):
        return
    p = event.progress
    stage = p.stage.value if p.stage else "-"
    print(
        f"[{stage}] {event.kind}: {p.processed}/{p.total} ({p.percentage:.1f}%) "
        f"new={p.new_count} updated={p.updated_count} failed={p.failed_count} elapsed={p.elapsed:.1f}s"
        + (f" - {p.message}" if p.message else "")
    )


def run_crawl(config: CrawlerConfig, storage: SqliteStorage) -> int:
    factory = FetcherFactory(config)
    orchestrator = CrawlOrchestrator(config, storage, factory.create_fetcher())
    unsubscribe = orchestrator.progress.subscribe(_print_stage_event)
    try:
        summary = orchestrator.run()
    except KeyboardInterrupt:
        orchestrator.stop()
        raise
    finally:
        unsubscribe()
        factory.close()

    print(
        f"\nDONE: status={summary.status.value} pages={summary.pages_completed}/{summary.pages_attempted} "
        f"new_products={summary.new_products} details={summary.details_collected}/{summary.details_attempted} "
        f"new_details={summary.new_details} updated_details={summary.updated_details}"
    )
    if summary.incomplete_pages:
        print(f"incomplete site pages: {', '.join(map(str, summary.incomplete_pages))}")
    if summary.error:
        print(f"error: {summary.error}")
    return 0 if summary.status == CrawlerStatus.COMPLETED else 1


def _collect(
    config: CrawlerConfig,
    storage: SqliteStorage,
    gap_result: GapDetectionResult,
    fetcher: BasePageFetcher,
    max_concurrency: int,
    retry_attempts: int,
) -> int:
    collector = GapCollector(
        storage,
        config.products_per_page,
        base_retry_delay=config.base_retry_delay,
        max_retry_delay=config.max_retry_delay,
    )
    result = collector.collect_missing_products(
        gap_result,
        fetcher,
        max_concurrent_pages=max_concurrency,
        max_retries=retry_attempts,
        delay_between_pages=1.0,
    )
    print(format_collection_report(result))
    return 0 if result.success else 1


def _site_mapper(fetcher: BasePageFetcher, products_per_page: int) -> Optional[PageIndexMapper]:
    """Live site layout, so the partly filled newest page is held to its real count."""
    try:
        info = fetcher.fetch_site_info()
        return PageIndexMapper(info.total_pages, info.last_page_product_count, products_per_page)
    except Exception as exc:  # noqa: BLE001
        logger.warning("could not read site layout (%s); expecting full pages everywhere", exc)
        return None


def run_detect(
    config: CrawlerConfig,
    storage: SqliteStorage,
    collect: bool,
    dry_run: bool,
    max_concurrency: int,
    retry_attempts: int,
    page_range: Optional[Tuple[int, int]] = None,
) -> int:
    factory = FetcherFactory(config)
    try:
        fetcher = factory.create_fetcher()
        detector = GapDetector(
            storage, config.products_per_page, mapper=_site_mapper(fetcher, config.products_per_page)
        )

        def detect() -> GapDetectionResult:
            if page_range is None:
                return detector.detect_missing_products()
            return detector.detect_missing_products_in_range(*page_range)

        gap_result = detect()
        print(format_gap_report(gap_result))

        if not collect or not gap_result.gaps:
            return 0
        if dry_run:
            print(
                f"dry run: would collect {len(gap_result.gaps)} pages ({gap_result.total_missing_products} products)"
            )
            return 0

        code = _collect(config, storage, gap_result, fetcher, max_concurrency, retry_attempts)
        remaining = detect()
        print(f"remaining after collection: {len(remaining.gaps)} pages, {remaining.total_missing_products} products")
        return code
    finally:
        factory.close()


def run_collect_details(config: CrawlerConfig, storage: SqliteStorage, dry_run: bool, max_concurrency: int, retry_attempts: int) -> int:
    missing = GapDetector(storage, config.products_per_page).detect_missing_product_details()
    print(f"products without details: {len(missing)}")
    if dry_run or not missing:
        return 0
    factory = FetcherFactory(config)
    try:
        collector = GapCollector(
            storage,
            config.products_per_page,
            base_retry_delay=config.base_retry_delay,
            max_retry_delay=config.max_retry_delay,
        )
        result = collector.collect_missing_details(
            factory.create_fetcher(), max_concurrent=max_concurrency, max_retries=retry_attempts
        )
    finally:
        factory.close()
    print(format_collection_report(result))
    return 0 if result.success else 1


def page_range_from_args(start_page: Optional[int], end_page: Optional[int]) -> Tuple[int, int]:
    """Turn 1-based CLI page numbers into a 0-based page id range."""
    if start_page is None or end_page is None:
        raise ValueError("--startPage and --endPage are both required")
    if start_page < 1 or end_page < 1:
        raise ValueError("page numbers start at 1")
    return start_page - 1, end_page - 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="catalog-crawler",
        description="Crawl a paginated product catalog and backfill gaps in the collected data.",
    )
    commands = parser.add_mutually_exclusive_group()
    commands.add_argument("--crawl", action="store_true", help="Run the list and detail collection stages")
    commands.add_argument("--detect-only", action="store_true", help="Report gaps without collecting")
    commands.add_argument("--detect-and-collect", action="store_true", help="Report gaps and collect them")
    commands.add_argument("--collect-range", action="store_true", help="Collect gaps between --startPage and --endPage")
    commands.add_argument("--recrawl-range", action="store_true", help="Delete and re-collect --startPage..--endPage")
    commands.add_argument("--collect-details", action="store_true", help="Fetch details for products lacking them")

    parser.add_argument("--startPage", "--start-page", dest="start_page", type=int, help="First page (1-based)")
    parser.add_argument("--endPage", "--end-page", dest="end_page", type=int, help="Last page (1-based)")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be collected and stop")
    parser.add_argument("--max-concurrency", type=int, default=3, help="Concurrent pages during gap collection")
    parser.add_argument("--retry-attempts", type=int, default=2, help="Retries per page during gap collection")

    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--db", dest="db_path", help="SQLite database path")
    parser.add_argument("--crawler-type", choices=CRAWLER_TYPES, help="Fetch strategy")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.max_concurrency < 1 or args.retry_attempts < 0:
        parser.error("--max-concurrency must be >= 1 and --retry-attempts >= 0")

    page_range = None
    if args.collect_range or args.recrawl_range:
        try:
            page_range = page_range_from_args(args.start_page, args.end_page)
        except ValueError as exc:
            parser.error(str(exc))

    try:
        config = load_config(args.config, db_path=args.db_path, crawler_type=args.crawler_type)
    except CrawlerError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    storage = SqliteStorage(config.db_path)
    try:
        if args.crawl:
            return run_crawl(config, storage)
        if args.detect_only:
            return run_detect(config, storage, False, args.dry_run, args.max_concurrency, args.retry_attempts)
        if args.detect_and_collect:
            return run_detect(config, storage, True, args.dry_run, args.max_concurrency, args.retry_attempts)
        if args.collect_range:
            return run_detect(
                config, storage, True, args.dry_run, args.max_concurrency, args.retry_attempts, page_range
            )
        if args.recrawl_range:
            if args.dry_run:
                print(f"dry run: would delete and re-collect page ids {page_range[0]}..{page_range[1]}")
                return 0
            storage.delete_page_range(*page_range)
            return run_detect(config, storage, True, False, args.max_concurrency, args.retry_attempts, page_range)
        if args.collect_details:
            return run_collect_details(config, storage, args.dry_run, args.max_concurrency, args.retry_attempts)
    except CrawlerError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        storage.close()

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
