"""
Throttled, monotonic progress propagation for a single task.

A ``ProgressReporter`` is created by the background unit that owns a task and
is the only object allowed to change that task's ``TaskRecord``. The
generation engine never sees the record: its progress callback only sends
``(percent, message)`` values to the reporter, which decides whether the
value is accepted and whether it is written to the status store now.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .models import TaskRecord, TaskStatus
from .stores import StoreUnavailableError, TaskStatusStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class ProgressReporter:
    """
    Single owner of one task's status record.

    Rules applied to ``report``:
        - percent is clamped to [0, 100]
        - a percent lower than the recorded one is discarded
        - store writes are spaced at least ``min_interval`` seconds apart,
          except the first report and any report of 100, which always go out

    ``complete`` and ``fail`` bypass throttling; the terminal write always
    happens after every earlier progress write for the task.

    Thread Safety:
        Engines may invoke the callback from their own worker threads, so
        record mutation and the store write happen under one lock.
    """

    def __init__(
        self,
        store: TaskStatusStore,
        record: TaskRecord,
        ttl: float,
        min_interval: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            store: Where the record is written
            record: Initial record; the reporter works on its own copy
            ttl: Expiry applied on every write, in seconds
            min_interval: Minimum spacing between throttled writes
            clock: Monotonic time source
        """
        self._store = store
        self._record = record.model_copy()
        self._ttl = ttl
        self._min_interval = min_interval
        self._clock = clock
        self._last_write: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def task_id(self) -> str:
        return self._record.task_id

    @property
    def record(self) -> TaskRecord:
        with self._lock:
            return self._record.model_copy()

    def report(self, percent: int, message: str = "") -> bool:
        """
        Accept a progress value from the generation engine.

        Returns:
            True if the value was written to the status store
        """
        percent = max(0, min(100, int(percent)))
        with self._lock:
            if self._record.is_terminal:
                return False
            if percent < self._record.progress:
                logger.debug(f"Task {self.task_id}: discarded regressing progress {percent} < {self._record.progress}")
                return False

            self._record.progress = percent
            if message:
                self._record.message = message

            now = self._clock()
            boundary = self._last_write is None or percent >= 100
            if not boundary and now - self._last_write < self._min_interval:
                return False
            try:
                self._write(now)
            except StoreUnavailableError as exc:
                # Intermediate progress is best-effort; the terminal write is not
                logger.warning(f"Task {self.task_id}: progress write failed: {exc}")
                return False
            return True

    def complete(self, download_url: str, message: str = "Completed") -> TaskRecord:
        with self._lock:
            self._record.status = TaskStatus.COMPLETED
            self._record.progress = 100
            self._record.message = message
            self._record.download_url = download_url
            self._write(self._clock())
            return self._record.model_copy()

    def fail(self, message: str) -> TaskRecord:
        with self._lock:
            self._record.status = TaskStatus.FAILED
            self._record.message = message or "Generation failed"
            self._record.download_url = None
            self._write(self._clock())
            return self._record.model_copy()

    def _write(self, now: float) -> None:
        self._record.updated_at = datetime.utcnow()
        self._store.put(self.task_id, self._record, self._ttl)
        self._last_write = now
