from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from .models import ConcurrencyState
from .strategies import ControlStrategy, default_strategies

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

Worker = Callable[[T, threading.Event], U]

# How often a parked worker re-checks the stop flags.
_WAIT_SLICE = 0.1


class ConcurrencyScheduler:
    """Bounded worker pool that runs a list of items and keeps results in input order.

    Workers claim the next unclaimed index from a shared counter, so every
    result slot is written at most once. With adaptive mode enabled the
    number of workers allowed to claim is moved by the configured strategies
    after every outcome; workers already running are never interrupted.
    """

    def __init__(
        self,
        initial_concurrency: int,
        adaptive: bool = False,
        min_concurrency: int = 1,
        window_size: int = 10,
        error_threshold: float = 0.3,
        strategies: Optional[Iterable[ControlStrategy]] = None,
    ) -> None:
        if initial_concurrency < 1:
            raise ValueError("initial_concurrency must be >= 1")
        self._initial = initial_concurrency
        self._adaptive = adaptive
        self._min = min(min_concurrency, initial_concurrency)
        self._window_size = window_size
        self._error_threshold = error_threshold
        self._strategies = list(strategies) if strategies is not None else default_strategies()

        self._cv = threading.Condition()
        self._state: Optional[ConcurrencyState] = None
        self._adjustments: List[Tuple[int, int]] = []

    @property
    def state(self) -> Optional[ConcurrencyState]:
        """Concurrency state of the current or most recent run."""
        return self._state

    @property
    def adjustments(self) -> List[Tuple[int, int]]:
        with self._cv:
            return list(self._adjustments)

    @property
    def limit(self) -> int:
        with self._cv:
            return self._state.current if self._state else self._initial

    def run(
        self,
        items: Sequence[T],
        worker: Worker,
        cancel_event: Optional[threading.Event] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        fatal: Tuple[Type[BaseException], ...] = (),
    ) -> List[Optional[U]]:
        """Run worker(item, cancel_event) for every item.

        Returns one slot per item in input order. Slots of items that failed
        or were never claimed stay None. An exception listed in `fatal` ends
        the loop that raised it; the other loops keep going.
        """
        total = len(items)
        results: List[Optional[U]] = [None] * total
        if total == 0:
            return results

        cancel = cancel_event if cancel_event is not None else threading.Event()
        stop = should_stop if should_stop is not None else (lambda: False)

        state = ConcurrencyState(
            initial=self._initial,
            minimum=self._min,
            window_size=self._window_size,
            shrink_threshold=self._error_threshold,
        )
        counter = {"next": 0, "active": 0}
        with self._cv:
            self._state = state
            self._adjustments = []

        def halted() -> bool:
            return cancel.is_set() or stop()

        def claim() -> Optional[int]:
            with self._cv:
                while not halted() and counter["next"] < total and counter["active"] >= state.current:
                    self._cv.wait(timeout=_WAIT_SLICE)
                if halted() or counter["next"] >= total:
                    return None
                index = counter["next"]
                counter["next"] += 1
                counter["active"] += 1
                return index

        def loop() -> None:
            while True:
                index = claim()
                if index is None:
                    return
                ok = False
                retire = False
                try:
                    results[index] = worker(items[index], cancel)
                    ok = True
                except Exception as exc:  # noqa: BLE001
                    logger.exception("worker failed on item %d", index)
                    retire = isinstance(exc, fatal)
                finally:
                    with self._cv:
                        counter["active"] -= 1
                        self._report(state, ok)
                        self._cv.notify_all()
                if retire:
                    logger.warning("worker retired after fatal error on item %d", index)
                    return

        workers = min(self._initial, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crawl-worker") as pool:
            futures = [pool.submit(loop) for _ in range(workers)]
            for future in futures:
                future.result()
        return results

    def _report(self, state: ConcurrencyState, success: bool) -> None:
        """Record one outcome and apply the first matching strategy. Caller holds the lock."""
        if not self._adaptive:
            return
        state.record(success)
        for strat in self._strategies:
            if strat.should_apply(state):
                old_limit = state.current
                strat.apply(state)
                new_limit = state.current
                if new_limit == old_limit:
                    break
                self._adjustments.append((old_limit, new_limit))
                log = {
                    "timestamp": time.time(),
                    "strategy": strat.__class__.__name__,
                    "old_limit": old_limit,
                    "new_limit": new_limit,
                    "reason": {
                        "window": len(state.window),
                        "failure_rate": round(state.failure_rate, 3),
                        "shrink_threshold": state.shrink_threshold,
                        "grow_threshold": state.grow_threshold,
                    },
                }
                logger.info(json.dumps(log, ensure_ascii=False))
                break
