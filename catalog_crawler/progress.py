from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .models import CrawlerStatus, CrawlingProgress, RetryStatus, Stage
from .tasks import CrawlTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    progress: CrawlingProgress
    task: Optional[CrawlTask] = None


Observer = Callable[[ProgressEvent], None]

STAGE_STARTED = "stage_started"
PROGRESS = "progress"
TASK = "task"
RETRY = "retry"
STATUS = "status"
STAGE_COMPLETED = "stage_completed"
STAGE_FAILED = "stage_failed"


class ProgressTracker:
    """Thread-safe progress aggregate for the active crawl stage.

    Workers report through the record_* methods; observers registered with
    subscribe() receive a ProgressEvent after every change. Only one stage
    may be active at a time."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # Serialises delivery so observers see snapshots in order.
        self._emit_lock = threading.RLock()
        self._observers: List[Observer] = []

        self._status = CrawlerStatus.IDLE
        self._stage: Optional[Stage] = None
        self._stage_active = False
        self._started_at = 0.0
        self._finished_at: Optional[float] = None
        self._processed = 0
        self._total = 0
        self._new = 0
        self._updated = 0
        self._failed = 0
        self._batch = 0
        self._total_batches = 0
        self._retry: Optional[RetryStatus] = None
        self._message: Optional[str] = None

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; the returned callable removes it again."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    @property
    def active_stage(self) -> Optional[Stage]:
        with self._lock:
            return self._stage if self._stage_active else None

    def set_status(self, status: CrawlerStatus, message: Optional[str] = None) -> None:
        with self._lock:
            self._status = status
            if message is not None:
                self._message = message
        self._emit(STATUS)

    def start_stage(self, stage: Stage, total: int, total_batches: int = 0) -> None:
        with self._lock:
            if self._stage_active:
                raise RuntimeError(f"stage {self._stage.value} is still active")
            self._stage = stage
            self._stage_active = True
            self._started_at = self._clock()
            self._finished_at = None
            self._processed = 0
            self._total = max(0, total)
            self._new = 0
            self._updated = 0
            self._failed = 0
            self._batch = 0
            self._total_batches = total_batches
            self._retry = None
            self._message = None
        self._emit(STAGE_STARTED)

    def set_total(self, total: int) -> None:
        with self._lock:
            self._total = max(0, total)
        self._emit(PROGRESS)

    def set_batch(self, current: int, total: int) -> None:
        with self._lock:
            self._batch = current
            self._total_batches = total
        self._emit(PROGRESS)

    def record_processed(self, new_count: int = 0, updated_count: int = 0, failed: bool = False) -> None:
        """Count one resolved task and the new or updated items it produced.

        A task that ran out of retries is resolved too; pass failed=True.
        """
        with self._lock:
            if not self._stage_active:
                return
            self._processed += 1
            if failed:
                self._failed += 1
            self._new += new_count
            self._updated += updated_count
        self._emit(PROGRESS)

    def update_retry(self, retry: Optional[RetryStatus]) -> None:
        with self._lock:
            self._retry = retry
        self._emit(RETRY)

    def task_changed(self, task: CrawlTask) -> None:
        self._emit(TASK, task)

    def complete_stage(self, message: Optional[str] = None) -> None:
        self._finish(STAGE_COMPLETED, message)

    def fail_stage(self, message: str) -> None:
        self._finish(STAGE_FAILED, message)

    def _finish(self, kind: str, message: Optional[str]) -> None:
        with self._lock:
            if not self._stage_active:
                return
            self._stage_active = False
            self._finished_at = self._clock()
            self._retry = None
            self._message = message
        self._emit(kind)

    def snapshot(self) -> CrawlingProgress:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> CrawlingProgress:
        if self._stage is None:
            return CrawlingProgress(stage=None, status=self._status, message=self._message)
        end = self._finished_at if self._finished_at is not None else self._clock()
        elapsed = max(0.0, end - self._started_at)
        percentage = (self._processed / self._total * 100.0) if self._total else 0.0
        remaining: Optional[float] = None
        if not self._stage_active:
            remaining = 0.0
        elif self._processed:
            remaining = elapsed / self._processed * max(0, self._total - self._processed)
        return CrawlingProgress(
            stage=self._stage,
            status=self._status,
            processed=self._processed,
            total=self._total,
            percentage=min(100.0, percentage),
            elapsed=elapsed,
            remaining=remaining,
            new_count=self._new,
            updated_count=self._updated,
            failed_count=self._failed,
            current_batch=self._batch,
            total_batches=self._total_batches,
            retry=self._retry,
            message=self._message,
        )

    def _emit(self, kind: str, task: Optional[CrawlTask] = None) -> None:
        with self._emit_lock:
            with self._lock:
                observers = list(self._observers)
                event = ProgressEvent(kind=kind, progress=self._snapshot_locked(), task=task)
            for observer in observers:
                try:
                    observer(event)
                except Exception:  # noqa: BLE001
                    logger.exception("progress observer failed on %s event", kind)
