"""Generic periodic task scheduler.

Tasks are registered as ``(name, period, handler)``. ``run_pending`` runs
every task whose period has elapsed; a task that raises is logged and
rescheduled without affecting the others. Each task carries a
non-blocking lock, so a run that is still in progress (from another
thread, or a slow previous tick) is skipped rather than overlapped.

Cross-process overlap is not prevented here; the jobs themselves lock
their rows with ``select_for_update(skip_locked=True)``.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    name: str
    period: timedelta
    handler: Callable[[], object]
    next_run_at: float = 0.0
    last_started_at: Optional[float] = None
    last_finished_at: Optional[float] = None
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def running(self) -> bool:
        return self._lock.locked()


class Scheduler:
    """Runs registered tasks on fixed periods.

    Args:
        clock: Monotonic time source in seconds, injectable for tests.
        poll_interval: Sleep between ``run_pending`` passes in loop mode.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, poll_interval: float = 5.0):
        self._clock = clock
        self.poll_interval = poll_interval
        self._tasks: Dict[str, ScheduledTask] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---- registration ----

    def register(self, name: str, period: timedelta, handler: Callable[[], object]) -> ScheduledTask:
        if name in self._tasks:
            raise ValueError(f"task {name!r} already registered")
        if period.total_seconds() <= 0:
            raise ValueError("period must be positive")
        task = ScheduledTask(name=name, period=period, handler=handler, next_run_at=self._clock())
        self._tasks[name] = task
        return task

    def task(self, name: str, period: timedelta):
        """Decorator form of ``register``."""

        def decorator(fn):
            self.register(name, period, fn)
            return fn

        return decorator

    @property
    def tasks(self) -> Dict[str, ScheduledTask]:
        return dict(self._tasks)

    # ---- execution ----

    def run_task(self, name: str) -> bool:
        """Run one task now.

        Returns:
            bool: False when the task was skipped because a previous run
            is still in progress, True otherwise (even if it failed).
        """
        task = self._tasks[name]
        if not task._lock.acquire(blocking=False):
            task.skipped += 1
            logger.warning("task still running, skipped", extra={"task": name})
            return False
        try:
            started = self._clock()
            task.last_started_at = started
            task.next_run_at = started + task.period.total_seconds()
            try:
                result = task.handler()
            except Exception as e:
                task.failures += 1
                task.last_error = f"{type(e).__name__}: {e}"
                logger.exception("task failed", extra={"task": name})
            else:
                task.last_error = None
                logger.info("task finished", extra={"task": name, "result": result})
            task.runs += 1
            task.last_finished_at = self._clock()
            return True
        finally:
            task._lock.release()

    def due(self) -> Iterable[str]:
        now = self._clock()
        return [t.name for t in self._tasks.values() if t.next_run_at <= now]

    def run_pending(self) -> list[str]:
        """Run every due task once; returns the names that actually ran."""
        ran = []
        for name in self.due():
            if self.run_task(name):
                ran.append(name)
        return ran

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        stop = stop or self._stop
        logger.info("scheduler started", extra={"tasks": sorted(self._tasks)})
        while not stop.is_set():
            self.run_pending()
            stop.wait(self.poll_interval)
        logger.info("scheduler stopped")

    def start(self) -> threading.Thread:
        """Run the loop in a daemon thread."""
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def snapshot(self) -> dict:
        return {
            t.name: {
                "period_seconds": t.period.total_seconds(),
                "running": t.running,
                "runs": t.runs,
                "failures": t.failures,
                "skipped": t.skipped,
                "last_error": t.last_error,
            }
            for t in self._tasks.values()
        }
