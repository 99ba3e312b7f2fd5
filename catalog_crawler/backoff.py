from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnRetry = Callable[[int, float, BaseException], None]
ShouldAbort = Callable[[int, BaseException], bool]

# Granularity of the abort check while waiting between attempts.
ABORT_POLL_INTERVAL = 0.1


class BackoffStrategy:
    """Exponential backoff with symmetric jitter.

    Delay before retry k is min(max, base * 2^(k-1)) moved by up to 25%
    either way, and never shorter than base."""

    def __init__(
        self,
        base_seconds: float = 2.5,
        max_seconds: float = 30.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._rng = rng

    def get_sleep(self, attempt: int) -> float:
        """Calculate the backoff sleep duration in seconds for a given retry attempt."""
        capped = min(self._max, self._base * (2 ** max(attempt - 1, 0)))
        jitter = capped * 0.5 * (self._rng() - 0.5)
        return max(self._base, capped + jitter)


class RetryPolicy:
    """Runs a fallible operation with bounded retries and backoff between them."""

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._sleep = sleep
        self._rng = rng

    def execute(
        self,
        operation: Callable[[int], T],
        max_retries: int,
        base_delay: float,
        max_delay: float,
        on_retry: Optional[OnRetry] = None,
        should_abort: Optional[ShouldAbort] = None,
    ) -> T:
        """Call operation(attempt) until it succeeds, at most max_retries + 1 times.

        should_abort(attempt, error) is asked after every failure and again
        while waiting; a True answer re-raises the last error at once.
        on_retry(attempt, delay, error) is informational only.
        """
        backoff = BackoffStrategy(base_delay, max_delay, rng=self._rng)
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation(attempt)
            except Exception as exc:
                if attempt > max_retries:
                    raise
                if should_abort is not None and should_abort(attempt, exc):
                    raise
                delay = backoff.get_sleep(attempt)
                if on_retry is not None:
                    try:
                        on_retry(attempt, delay, exc)
                    except Exception:  # noqa: BLE001
                        logger.exception("on_retry hook failed")
                logger.debug("attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay)
                if self._wait(delay, attempt, exc, should_abort):
                    raise

    def _wait(
        self,
        delay: float,
        attempt: int,
        exc: BaseException,
        should_abort: Optional[ShouldAbort],
    ) -> bool:
        """Sleep for delay seconds; return True if aborted while waiting."""
        if should_abort is None:
            self._sleep(delay)
            return False
        remaining = delay
        while remaining > 0:
            step = min(ABORT_POLL_INTERVAL, remaining)
            self._sleep(step)
            remaining -= step
            if should_abort(attempt, exc):
                return True
        return False
