from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Callable
import logging
import threading
import time

from croniter import croniter

from .metrics import BackupMetrics
from .models import BackupRunResult, BackupState, RunStatus

logger = logging.getLogger(__name__)


class RunState:
    """Idle/Running flag and the last RunStatus behind a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running = False
        self._status = RunStatus()

    def try_begin(self) -> bool:
        with self._lock:
            if self._running:
                return False
            self._running = True
            return True

    def finish(self, status: RunStatus) -> None:
        with self._lock:
            self._status = status
            self._running = False

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def snapshot(self) -> tuple[RunStatus, bool]:
        with self._lock:
            return self._status, self._running


class BackupScheduler:
    """Single-flight entry points for backup runs.

    ``run_scheduled`` (timer) skips when a run is in flight, ``trigger``
    (external request) reports the conflict to its caller, and both share the
    same ``RunState`` so at most one run executes at a time.
    """

    def __init__(
        self,
        run_backup: Callable[[], BackupRunResult],
        *,
        state: RunState | None = None,
        metrics: BackupMetrics | None = None,
        cron_schedule: str = "0 0 * * *",
        interval_seconds: int = 0,
    ) -> None:
        self.run_backup = run_backup
        self.state = state or RunState()
        self.metrics = metrics
        self.cron_schedule = cron_schedule
        self.interval_seconds = interval_seconds
        self._worker: threading.Thread | None = None

    def run_scheduled(self) -> bool:
        if not self.state.try_begin():
            logger.info("Backup already running; skipping scheduled run.")
            return False
        logger.info("Starting scheduled backup...")
        self._execute()
        return True

    def run_once(self) -> RunStatus:
        if not self.state.try_begin():
            logger.info("Backup already running; skipping run-once request.")
            return self.state.snapshot()[0]
        return self._execute()

    def trigger(self) -> bool:
        if not self.state.try_begin():
            logger.info("Task already running; rejecting backup request.")
            return False
        worker = threading.Thread(target=self._execute, name="kubebackup-run", daemon=True)
        self._worker = worker
        worker.start()
        return True

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return not self.state.running

    def next_fire_time(self, after: datetime) -> datetime:
        if self.interval_seconds > 0:
            return after + timedelta(seconds=self.interval_seconds)
        return croniter(self.cron_schedule, after).get_next(datetime)

    def serve_forever(self, stop_event: threading.Event) -> None:
        # Only the timer loop reads the schedule.
        if self.interval_seconds <= 0 and not croniter.is_valid(self.cron_schedule):
            raise ValueError(f"invalid cron schedule: {self.cron_schedule!r}")
        logger.info(
            "Starting scheduler (%s)...",
            f"every {self.interval_seconds}s" if self.interval_seconds > 0 else f"cron '{self.cron_schedule}'",
        )
        next_run = self.next_fire_time(datetime.now(tz=UTC))
        while not stop_event.is_set():
            logger.info("Next backup scheduled at %s", next_run.isoformat())
            delay = (next_run - datetime.now(tz=UTC)).total_seconds()
            if delay > 0 and stop_event.wait(delay):
                break
            self.run_scheduled()
            next_run = self.next_fire_time(max(next_run, datetime.now(tz=UTC)))
        logger.info("Scheduler stopped.")

    def _execute(self) -> RunStatus:
        started = datetime.now(tz=UTC)
        started_monotonic = time.monotonic()
        if self.metrics is not None:
            self.metrics.run_started()

        state = BackupState.FAILED
        try:
            result = self.run_backup()
            tree_error = result.report.combined_error()
            if tree_error:
                message = f"Backup completed with errors: {tree_error}"
                logger.error(message)
            else:
                state = BackupState.SUCCESS
                message = "Backup completed successfully."
        except Exception as error:  # pylint: disable=broad-except
            message = str(error).strip() or error.__class__.__name__
            logger.error("Backup failed: %s", message)

        status = RunStatus(
            state=state,
            message=message,
            started_at=started.replace(microsecond=0).isoformat(),
            duration_seconds=time.monotonic() - started_monotonic,
        )
        try:
            if self.metrics is not None:
                self.metrics.run_finished(status, started.timestamp())
        finally:
            self.state.finish(status)
        logger.info("Backup run finished with status %s in %.1fs", status.state.value, status.duration_seconds)
        return status
