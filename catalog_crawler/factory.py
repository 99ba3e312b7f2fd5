from __future__ import annotations

from typing import Dict, Optional

from .base import BasePageFetcher
from .config import CrawlerConfig
from .fetchers import DEFAULT_USER_AGENT, BrowserPageFetcher, HttpPageFetcher
from .page_cache import PageCountCache
from .rate_limiter import RateLimiter


class FetcherFactory:
    """Builds the fetch strategy named by config.crawler_type.

    Instances are cached per strategy so the page-count cache and the
    request pacing survive across stages of one crawl.
    """

    def __init__(self, config: CrawlerConfig, cache_instances: bool = True) -> None:
        self._config = config
        self._cache_instances = cache_instances
        self._cache: Dict[str, BasePageFetcher] = {}

    def create_fetcher(self, crawler_type: Optional[str] = None) -> BasePageFetcher:
        kind = crawler_type or self._config.crawler_type
        if self._cache_instances and kind in self._cache:
            return self._cache[kind]

        cfg = self._config
        common = dict(
            page_timeout=cfg.page_timeout,
            detail_timeout=cfg.detail_timeout,
            cache=PageCountCache(ttl=cfg.cache_ttl),
            rate_limiter=RateLimiter(cfg.min_request_delay, cfg.max_request_delay),
        )
        user_agent = cfg.user_agent or DEFAULT_USER_AGENT
        if kind == "http":
            fetcher: BasePageFetcher = HttpPageFetcher(
                cfg.listing_url, user_agent=user_agent, impersonate=cfg.impersonate, **common
            )
        elif kind == "browser":
            fetcher = BrowserPageFetcher(cfg.listing_url, user_agent=user_agent, headless=cfg.headless, **common)
        else:
            raise ValueError(f"Unknown crawler_type: {kind}")

        if self._cache_instances:
            self._cache[kind] = fetcher
        return fetcher

    def close(self) -> None:
        for fetcher in self._cache.values():
            fetcher.close()
        self._cache.clear()


def create_fetcher(config: CrawlerConfig) -> BasePageFetcher:
    return FetcherFactory(config, cache_instances=False).create_fetcher()
