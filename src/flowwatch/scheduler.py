from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from flowwatch.models import utcnow
from flowwatch.observability import get_logger

logger = get_logger(__name__)


class ScheduledJob(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs callbacks on a fixed interval until their job is cancelled."""

    def every(
        self,
        interval_seconds: float,
        callback: Callable[[], None],
        *,
        run_immediately: bool = False,
        name: str = "job",
    ) -> ScheduledJob: ...


def _run_guarded(name: str, callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception:
        logger.warning("Scheduled job %s failed", name, exc_info=True)


class _ThreadJob:
    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], None],
        *,
        run_immediately: bool,
        name: str,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.run_immediately = run_immediately
        self.name = name
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"flowwatch-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _loop(self) -> None:
        if self.run_immediately and not self._stop.is_set():
            _run_guarded(self.name, self.callback)
        while not self._stop.wait(self.interval_seconds):
            _run_guarded(self.name, self.callback)

    def cancel(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=max(1.0, self.interval_seconds * 2))


class ThreadScheduler:
    """One daemon thread per job, paced by ``threading.Event.wait``."""

    def every(
        self,
        interval_seconds: float,
        callback: Callable[[], None],
        *,
        run_immediately: bool = False,
        name: str = "job",
    ) -> ScheduledJob:
        job = _ThreadJob(
            max(0.001, float(interval_seconds)),
            callback,
            run_immediately=run_immediately,
            name=name,
        )
        job.start()
        return job


@dataclass(slots=True)
class _ManualJob:
    interval_seconds: float
    callback: Callable[[], None]
    name: str
    next_due: float
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass(slots=True)
class ManualScheduler:
    """Virtual-time scheduler: nothing runs until ``advance`` is called."""

    start: datetime = field(default_factory=utcnow)
    elapsed_seconds: float = 0.0
    jobs: list[_ManualJob] = field(default_factory=list)

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed_seconds)

    def every(
        self,
        interval_seconds: float,
        callback: Callable[[], None],
        *,
        run_immediately: bool = False,
        name: str = "job",
    ) -> ScheduledJob:
        interval = max(0.001, float(interval_seconds))
        job = _ManualJob(
            interval_seconds=interval,
            callback=callback,
            name=name,
            next_due=self.elapsed_seconds + interval,
        )
        self.jobs.append(job)
        if run_immediately:
            _run_guarded(name, callback)
        return job

    def active_jobs(self) -> list[str]:
        return [job.name for job in self.jobs if not job.cancelled]

    def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing due jobs in due-time order."""
        target = self.elapsed_seconds + max(0.0, float(seconds))
        while True:
            due = [job for job in self.jobs if not job.cancelled and job.next_due <= target]
            if not due:
                break
            job = min(due, key=lambda item: item.next_due)
            self.elapsed_seconds = max(self.elapsed_seconds, job.next_due)
            job.next_due += job.interval_seconds
            _run_guarded(job.name, job.callback)
        self.elapsed_seconds = target
        self.jobs = [job for job in self.jobs if not job.cancelled]
