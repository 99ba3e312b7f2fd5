from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from .errors import InvalidTransitionError


class TaskKind(str, Enum):
    PAGE = "page"
    PRODUCT_DETAIL = "product_detail"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


# SUCCESS has no outgoing transitions. FAILED may be retried.
_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.SUCCESS, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.SUCCESS, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.SUCCESS}),
    TaskStatus.SUCCESS: frozenset(),
}


@dataclass
class CrawlTask:
    task_id: str
    kind: TaskKind
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[str] = None

    def transition(self, new_status: TaskStatus, error: Optional[str] = None) -> bool:
        """Move to new_status. Returns False when the signal is ignored.

        Signals arriving after SUCCESS are ignored; staying in the same
        state is a no-op.
        """
        if self.status == TaskStatus.SUCCESS:
            return False
        if new_status == self.status:
            if error is not None:
                self.error = error
            return False
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"{self.task_id}: {self.status.value} -> {new_status.value}")
        self.status = new_status
        self.error = error if new_status == TaskStatus.FAILED else None
        return True


TaskListener = Callable[[CrawlTask], None]


class TaskBoard:
    """Thread-safe registry of the tasks of one crawl stage."""

    def __init__(self, listener: Optional[TaskListener] = None) -> None:
        self._lock = threading.Lock()
        self._tasks: Dict[str, CrawlTask] = {}
        self._listener = listener

    def register(self, task_id: str, kind: TaskKind) -> CrawlTask:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                task = CrawlTask(task_id=task_id, kind=kind)
                self._tasks[task_id] = task
            return task

    def update(self, task_id: str, status: TaskStatus, error: Optional[str] = None) -> bool:
        with self._lock:
            task = self._tasks[task_id]
            changed = task.transition(status, error)
            snapshot = CrawlTask(task.task_id, task.kind, task.status, task.error)
        if changed and self._listener is not None:
            self._listener(snapshot)
        return changed

    def get(self, task_id: str) -> CrawlTask:
        with self._lock:
            return self._tasks[task_id]

    def with_status(self, status: TaskStatus) -> List[str]:
        with self._lock:
            return [t.task_id for t in self._tasks.values() if t.status == status]

    def counts(self) -> Dict[TaskStatus, int]:
        with self._lock:
            result = {s: 0 for s in TaskStatus}
            for task in self._tasks.values():
                result[task.status] += 1
            return result

    def clear(self) -> None:
        with self._lock:
            self._tasks.clear()
