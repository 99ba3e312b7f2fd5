from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .models import SitePageInfo


class PageCountCache:
    """Holds the last discovered SitePageInfo for ttl seconds.

    Owned by one fetcher; reads and writes go through a lock so workers
    never see a half-written entry.
    """

    def __init__(self, ttl: float = 3600.0, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: Optional[SitePageInfo] = None

    def get(self) -> Optional[SitePageInfo]:
        """Return the cached entry if it is still fresh."""
        with self._lock:
            if self._entry is None:
                return None
            if self._clock() - self._entry.fetched_at >= self._ttl:
                return None
            return self._entry

    def set(self, info: SitePageInfo) -> None:
        with self._lock:
            self._entry = info

    def now(self) -> float:
        return self._clock()

    def has_valid_entry(self) -> bool:
        return self.get() is not None

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None

    def get_or_fetch(self, fetch: Callable[[], SitePageInfo], force: bool = False) -> SitePageInfo:
        if not force:
            cached = self.get()
            if cached is not None:
                return cached
        info = fetch()
        self.set(info)
        return info
