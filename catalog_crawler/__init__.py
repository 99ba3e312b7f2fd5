"""Catalog crawler package.

Crawls a paginated product catalog under an adaptive concurrency budget,
checks collected pages for completeness and backfills the gaps.

Key modules:
    scheduler       -- ConcurrencyScheduler bounded worker pool
    strategies      -- adaptive concurrency strategies
    backoff         -- BackoffStrategy and RetryPolicy
    base            -- BasePageFetcher fetch pipeline
    fetchers        -- HttpPageFetcher, BrowserPageFetcher
    factory         -- FetcherFactory for choosing a fetch strategy
    parsers         -- listing and detail page extraction
    indexing        -- PageIndexMapper between site pages and page ids
    validator       -- PageValidator completeness checks
    progress        -- ProgressTracker and its event stream
    orchestrator    -- CrawlOrchestrator two-stage crawl
    gap_detector    -- GapDetector and gap range folding
    gap_collector   -- GapCollector backfilling of gaps
    storage         -- StorageBase and SqliteStorage
    config          -- CrawlerConfig and load_config
    cli             -- command line entry point
"""

__version__ = "0.1.0"
