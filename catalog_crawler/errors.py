from __future__ import annotations

from typing import Optional


class CrawlerError(Exception):
    """Base class for every error raised by the crawler package."""


class ConfigError(CrawlerError):
    """Raised when a CrawlerConfig holds values the crawler cannot run with."""


class PersistenceError(CrawlerError):
    """Raised when the storage backend fails to read or write."""


class CrawlAlreadyRunningError(CrawlerError):
    """Raised when a crawl is started while another one holds the process-wide lock."""


class InvalidTransitionError(CrawlerError):
    """Raised for task status transitions that can never happen."""


class PageOperationError(CrawlerError):
    """Failure of a single page or detail fetch.

    Carries the page number (or None for detail fetches) and the attempt
    number so the orchestrator can decide whether to retry.
    """

    kind = "Unknown"
    retryable = False

    def __init__(self, message: str, page_number: Optional[int] = None, attempt: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.page_number = page_number
        self.attempt = attempt

    def __str__(self) -> str:
        where = f"page {self.page_number}" if self.page_number is not None else "detail"
        return f"[{self.kind}] {where} (attempt {self.attempt}): {self.message}"


class PageTimeoutError(PageOperationError):
    kind = "Timeout"
    retryable = True


class PageAbortedError(PageOperationError):
    """Cooperative cancellation; never retried."""

    kind = "Abort"


class PageNavigationError(PageOperationError):
    kind = "Navigation"
    retryable = True


class PageContentExtractionError(PageOperationError):
    kind = "Extraction"
    retryable = True


class PageInitializationError(PageOperationError):
    """The fetch strategy could not start (browser launch, session setup)."""

    kind = "Initialization"


def is_retryable(exc: BaseException) -> bool:
    """Return True when a retry has a chance of succeeding for this error.

    Errors outside the page taxonomy are treated as transient.
    """
    if isinstance(exc, PageOperationError):
        return exc.retryable
    return not isinstance(exc, CrawlerError)
