"""Daily and on-demand triggering of the reconciliation job."""

from __future__ import annotations

import logging
import threading
from datetime import datetime

import schedule

from ..domain.reconciliation import ReconciliationJob, RunSummary
from ..errors import ReconciliationError, RunInProgressError
from ..metrics import RECONCILIATION_RUNS
from .run_lock import InMemoryRunLock, RunLock

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Owns the run lock and the recurring schedule for one ``ReconciliationJob``."""

    def __init__(self, job: ReconciliationJob, run_lock: RunLock | None = None, *, run_at: str = "03:00") -> None:
        self._job = job
        self._run_lock = run_lock or InMemoryRunLock()
        self._run_at = run_at
        self._scheduler = schedule.Scheduler()
        self._last_summary: RunSummary | None = None
        self._cease: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def last_summary(self) -> RunSummary | None:
        return self._last_summary

    @property
    def next_run(self) -> datetime | None:
        return self._scheduler.next_run

    def trigger(self, source: str = "manual") -> RunSummary:
        """Run reconciliation now unless another run holds the lock.

        Raises ``RunInProgressError`` when the lock is held and lets
        ``ReconciliationError`` from the job propagate.
        """
        if not self._run_lock.acquire():
            raise RunInProgressError("a reconciliation run is already in progress")
        try:
            logger.info("reconciliation run triggered by %s", source)
            summary = self._job.run(heartbeat=self._run_lock.extend)
        finally:
            self._run_lock.release()
        self._last_summary = summary
        return summary

    def register(self) -> None:
        """Schedule the daily run (host local time)."""
        self._scheduler.clear()
        self._scheduler.every().day.at(self._run_at).do(self._scheduled_run)
        logger.info("account reconciliation scheduled daily at %s", self._run_at)

    def _scheduled_run(self) -> None:
        try:
            self.trigger(source="schedule")
        except RunInProgressError:
            logger.warning("skipping scheduled reconciliation, a run is already in progress")
        except ReconciliationError as exc:
            logger.error("scheduled reconciliation failed, will retry at the next tick: %s", exc)
        except Exception:
            # keep the schedule thread alive
            logger.exception("unexpected error in scheduled reconciliation, will retry at the next tick")
            RECONCILIATION_RUNS.labels(outcome="error").inc()

    def start(self, interval: float = 1.0) -> threading.Event:
        """Run pending jobs on a daemon thread and return the event that stops it.

        Missed ticks are not replayed: if the process was down at the scheduled
        time, the next run happens at the following tick.
        """
        self.register()
        cease = threading.Event()

        def run() -> None:
            while not cease.is_set():
                self._scheduler.run_pending()
                cease.wait(interval)

        self._cease = cease
        self._thread = threading.Thread(target=run, name="account-reconciliation-scheduler", daemon=True)
        self._thread.start()
        return cease

    def run_forever(self, interval: float = 1.0) -> None:
        """Blocking variant of :meth:`start` used by the worker process."""
        self.register()
        self._cease = threading.Event()
        while not self._cease.is_set():
            self._scheduler.run_pending()
            self._cease.wait(interval)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop scheduling, ask an in-flight run to finish its current account and wait for it."""
        self._job.stop()
        if self._cease is not None:
            self._cease.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._scheduler.clear()
