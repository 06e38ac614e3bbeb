"""Recurring callbacks for ticks and auto-stop checks."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], object]


class Handle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def every(self, interval: float, callback: Callback, *, name: str = "job") -> Handle: ...

    def shutdown(self) -> None: ...


def _run_safely(name: str, callback: Callback) -> None:
    try:
        callback()
    except Exception:
        logger.exception("Scheduled job '%s' failed; retrying next cycle", name)


class _RecurringThread(threading.Thread):
    def __init__(self, interval: float, callback: Callback, name: str) -> None:
        super().__init__(name=f"worktime-{name}", daemon=True)
        self.interval = interval
        self.callback = callback
        self.job_name = name
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            _run_safely(self.job_name, self.callback)

    def cancel(self) -> None:
        self._stopped.set()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()


class ThreadScheduler:
    """Runs each recurring job on its own daemon thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: List[_RecurringThread] = []

    def every(self, interval: float, callback: Callback, *, name: str = "job") -> _RecurringThread:
        job = _RecurringThread(interval, callback, name)
        with self._lock:
            self._jobs = [item for item in self._jobs if not item.cancelled]
            self._jobs.append(job)
        job.start()
        return job

    def shutdown(self, timeout: float = 2.0) -> None:
        with self._lock:
            jobs, self._jobs = self._jobs, []
        for job in jobs:
            job.cancel()
        for job in jobs:
            if job is not threading.current_thread():
                job.join(timeout)


class ManualHandle:
    def __init__(self, interval: float, callback: Callback, name: str) -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Scheduler whose jobs only run when ``run_pending`` is called."""

    def __init__(self) -> None:
        self._jobs: List[ManualHandle] = []

    def every(self, interval: float, callback: Callback, *, name: str = "job") -> ManualHandle:
        handle = ManualHandle(interval, callback, name)
        self._jobs.append(handle)
        return handle

    @property
    def active(self) -> List[ManualHandle]:
        return [job for job in self._jobs if not job.cancelled]

    def active_named(self, name: str) -> List[ManualHandle]:
        return [job for job in self.active if job.name == name]

    def run_pending(self) -> int:
        """Run every live job once; jobs cancelled mid-run are skipped."""
        ran = 0
        for job in list(self._jobs):
            if job.cancelled:
                continue
            _run_safely(job.name, job.callback)
            ran += 1
        self._jobs = [job for job in self._jobs if not job.cancelled]
        return ran

    def shutdown(self) -> None:
        for job in self._jobs:
            job.cancel()
        self._jobs = []
