from __future__ import annotations

import random
import threading
import time
from typing import Callable


class RateLimiter:
    """Thread-safe request pacer with a randomised gap between requests.

    After each request the next one is held back by a delay drawn
    uniformly from [min_delay, max_delay] seconds. Calling acquire()
    blocks the current thread until the next request is allowed."""

    def __init__(
        self,
        min_delay: float,
        max_delay: float,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError("need 0 <= min_delay <= max_delay")
        self._min = min_delay
        self._max = max_delay
        self._rng = rng
        self._lock = threading.Lock()
        self._next_allowed = 0.0

    @property
    def enabled(self) -> bool:
        return self._max > 0

    def acquire(self) -> None:
        """Block until the next request is permitted."""
        if not self.enabled:
            return
        with self._lock:
            now = time.time()
            if now < self._next_allowed:
                time.sleep(self._next_allowed - now)
            self._next_allowed = time.time() + self._rng(self._min, self._max)
