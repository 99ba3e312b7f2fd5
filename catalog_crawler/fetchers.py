from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import requests
from curl_cffi import requests as curl_requests
from curl_cffi.requests.exceptions import RequestException as CurlRequestException
from curl_cffi.requests.exceptions import Timeout as CurlTimeout
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .base import BasePageFetcher
from .errors import (
    PageInitializationError,
    PageNavigationError,
    PageOperationError,
    PageTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Resource types the browser strategy never needs for text extraction.
BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "stylesheet", "media"})


class HttpPageFetcher(BasePageFetcher):
    """Plain HTTP strategy.

    Uses a requests session, or a curl_cffi session with browser TLS
    impersonation when `impersonate` is set. Sessions are kept per worker
    thread since neither library promises thread safety for a shared one.
    """

    def __init__(
        self,
        listing_url: str,
        user_agent: str = DEFAULT_USER_AGENT,
        impersonate: Optional[str] = None,
        *args,
        **kwargs,
    ) -> None:
        super().__init__(listing_url, *args, **kwargs)
        self._user_agent = user_agent
        self._impersonate = impersonate
        self._local = threading.local()
        self._sessions: list[Any] = []
        self._sessions_lock = threading.Lock()

    def _session(self) -> Any:
        session = getattr(self._local, "session", None)
        if session is None:
            if self._impersonate:
                session = curl_requests.Session()
            else:
                session = requests.Session()
                session.headers.update({"User-Agent": self._user_agent})
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _get_html(self, url: str, page_number: Optional[int], attempt: int, timeout: float) -> str:
        try:
            if self._impersonate:
                response = self._session().get(url, timeout=timeout, impersonate=self._impersonate)
            else:
                response = self._session().get(url, timeout=timeout)
        except (requests.Timeout, CurlTimeout) as exc:
            raise PageTimeoutError(f"timed out after {timeout}s: {url}", page_number, attempt) from exc
        except (requests.RequestException, CurlRequestException) as exc:
            raise PageNavigationError(f"{type(exc).__name__}: {exc}", page_number, attempt) from exc

        status_code = getattr(response, "status_code", None)
        if status_code is None or not 200 <= int(status_code) < 300:
            raise PageNavigationError(f"HTTP_{status_code} for {url}", page_number, attempt)
        return response.text

    def close(self) -> None:
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()


class BrowserPageFetcher(BasePageFetcher):
    """Headless browser strategy for pages that need JavaScript.

    Playwright's sync API is bound to the thread that started it, so every
    request runs in its own short-lived browser inside the calling worker.
    Images, fonts, stylesheets and media are blocked.
    """

    def __init__(
        self,
        listing_url: str,
        user_agent: str = DEFAULT_USER_AGENT,
        headless: bool = True,
        *args,
        **kwargs,
    ) -> None:
        super().__init__(listing_url, *args, **kwargs)
        self._user_agent = user_agent
        self._headless = headless

    @staticmethod
    def _route(route) -> None:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            route.abort()
        else:
            route.continue_()

    def _get_html(self, url: str, page_number: Optional[int], attempt: int, timeout: float) -> str:
        timeout_ms = int(timeout * 1000)
        try:
            playwright = sync_playwright().start()
        except Exception as exc:  # noqa: BLE001
            raise PageInitializationError(f"browser driver failed to start: {exc}", page_number, attempt) from exc
        try:
            try:
                browser = playwright.chromium.launch(headless=self._headless)
            except PlaywrightError as exc:
                raise PageInitializationError(f"browser launch failed: {exc}", page_number, attempt) from exc
            try:
                context = browser.new_context(user_agent=self._user_agent)
                page = context.new_page()
                page.route("**/*", self._route)
                try:
                    response = page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                except PlaywrightTimeoutError as exc:
                    raise PageTimeoutError(f"navigation timed out after {timeout}s: {url}", page_number, attempt) from exc
                except PlaywrightError as exc:
                    raise PageNavigationError(f"navigation failed: {exc}", page_number, attempt) from exc
                if response is not None and not response.ok:
                    raise PageNavigationError(f"HTTP_{response.status} for {url}", page_number, attempt)
                return page.content()
            except PageOperationError:
                raise
            except PlaywrightTimeoutError as exc:
                raise PageTimeoutError(str(exc), page_number, attempt) from exc
            except PlaywrightError as exc:
                raise PageNavigationError(str(exc), page_number, attempt) from exc
            finally:
                browser.close()
        finally:
            playwright.stop()
