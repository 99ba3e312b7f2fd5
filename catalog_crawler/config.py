from __future__ import annotations

import json
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Optional

from .errors import ConfigError

DEFAULT_LISTING_URL = (
    "https://csa-iot.org/csa-iot_products/?p_keywords=&p_type%5B%5D=14"
    "&p_program_type%5B%5D=1049&p_certificate=&p_family=&p_firmware_ver="
)

CRAWLER_TYPES = ("http", "browser")


@dataclass(frozen=True)
class CrawlerConfig:
    """Every setting the crawl core consumes. Times are in seconds."""

    listing_url: str = DEFAULT_LISTING_URL
    products_per_page: int = 12

    enable_batch_processing: bool = True
    batch_size: int = 30
    batch_delay: float = 2.0
    batch_retry_limit: int = 3

    product_list_retry_count: int = 3
    product_detail_retry_count: int = 3

    initial_concurrency: int = 5
    detail_concurrency: int = 5
    retry_concurrency: int = 1
    min_concurrency: int = 1
    max_concurrency: int = 16
    adaptive_concurrency: bool = True
    error_threshold: float = 0.3
    success_window_size: int = 10

    page_timeout: float = 60.0
    detail_timeout: float = 60.0
    cache_ttl: float = 3600.0
    min_request_delay: float = 0.1
    max_request_delay: float = 2.2
    base_retry_delay: float = 2.5
    max_retry_delay: float = 30.0

    crawler_type: str = "http"
    headless: bool = True
    user_agent: Optional[str] = None
    impersonate: Optional[str] = "chrome120"

    page_range_limit: int = 0
    refresh_existing_details: bool = False
    db_path: str = "catalog.sqlite3"

    def validate(self) -> "CrawlerConfig":
        """Raise ConfigError naming every invalid field; return self otherwise."""
        problems: List[str] = []

        def positive(name: str) -> None:
            if getattr(self, name) < 1:
                problems.append(f"{name} must be >= 1")

        def non_negative(name: str) -> None:
            if getattr(self, name) < 0:
                problems.append(f"{name} must be >= 0")

        if not self.listing_url:
            problems.append("listing_url is required")
        for name in (
            "products_per_page",
            "batch_size",
            "initial_concurrency",
            "detail_concurrency",
            "retry_concurrency",
            "min_concurrency",
            "max_concurrency",
            "success_window_size",
        ):
            positive(name)
        for name in (
            "batch_delay",
            "batch_retry_limit",
            "product_list_retry_count",
            "product_detail_retry_count",
            "cache_ttl",
            "min_request_delay",
            "max_request_delay",
            "base_retry_delay",
            "max_retry_delay",
            "page_range_limit",
        ):
            non_negative(name)
        if self.page_timeout <= 0 or self.detail_timeout <= 0:
            problems.append("timeouts must be > 0")
        if not 0 < self.error_threshold <= 1:
            problems.append("error_threshold must be in (0, 1]")
        if self.min_concurrency > self.initial_concurrency:
            problems.append("min_concurrency must not exceed initial_concurrency")
        if self.initial_concurrency > self.max_concurrency or self.detail_concurrency > self.max_concurrency:
            problems.append("initial/detail concurrency must not exceed max_concurrency")
        if self.max_request_delay < self.min_request_delay:
            problems.append("max_request_delay must be >= min_request_delay")
        if self.max_retry_delay < self.base_retry_delay:
            problems.append("max_retry_delay must be >= base_retry_delay")
        if self.crawler_type not in CRAWLER_TYPES:
            problems.append(f"crawler_type must be one of {', '.join(CRAWLER_TYPES)}")
        if problems:
            raise ConfigError("; ".join(problems))
        return self

    def with_overrides(self, **overrides: Any) -> "CrawlerConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None}).validate()


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


# Millisecond keys written by older config files.
_MS_KEYS = {
    "batch_delay_ms": "batch_delay",
    "page_timeout_ms": "page_timeout",
    "product_detail_timeout_ms": "detail_timeout",
    "cache_ttl_ms": "cache_ttl",
    "min_request_delay_ms": "min_request_delay",
    "max_request_delay_ms": "max_request_delay",
    "base_retry_delay_ms": "base_retry_delay",
    "max_retry_delay_ms": "max_retry_delay",
}

_ALIASES = {
    "matter_filter_url": "listing_url",
    "headless_browser": "headless",
    "custom_user_agent": "user_agent",
}


def config_from_mapping(data: Dict[str, Any]) -> CrawlerConfig:
    known = {f.name for f in fields(CrawlerConfig)}
    values: Dict[str, Any] = {}
    unknown: List[str] = []
    for raw_key, value in data.items():
        key = _snake(raw_key)
        if key in _MS_KEYS:
            values[_MS_KEYS[key]] = float(value) / 1000.0
            continue
        key = _ALIASES.get(key, key)
        if key == "crawler_type" and value in ("axios", "playwright"):
            value = "http" if value == "axios" else "browser"
        if key in known:
            values[key] = value
        else:
            unknown.append(raw_key)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")
    return CrawlerConfig(**values).validate()


def load_config(path: Optional[str] = None, **overrides: Any) -> CrawlerConfig:
    """Read a JSON config file (camelCase or snake_case keys) and apply overrides."""
    data: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must hold a JSON object")
    return config_from_mapping(data).with_overrides(**overrides)
