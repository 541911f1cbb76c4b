"""ReportScheduler — recurring, single-flight report runs using threading.Timer."""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from pivotal.errors import (
    DeliveryError,
    ExecutionError,
    PivotalError,
    SchedulerError,
    ValidationError,
)
from pivotal.reports.binding import resolve_parameters
from pivotal.reports.manager import ReportManager
from pivotal.scheduling.delivery import DeliverySink
from pivotal.scheduling.models import RetryPolicy, ScheduledReport, ScheduleStatus, TickResult
from pivotal.scheduling.schedule import Schedule, parse_schedule
from pivotal.settings import AnalyticsConfig

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReportScheduler:
    """Run scheduled reports and deliver their results.

    Each scheduled report moves ``idle -> running -> idle | failed``; a
    report still running when it falls due again is skipped, never
    queued.  Uses threading.Timer for the polling loop, no external
    scheduler dependencies required.

    Parameters
    ----------
    reports:
        Executes the underlying report definitions.
    sink:
        Receives every successful result.
    config:
        Worker count, tick interval and retry policy.
    clock:
        Wall-clock source used when ``tick`` is called without a time.
    sleep:
        Used for retry backoff; injectable for tests.
    state_path:
        Optional JSON snapshot of all schedules, rewritten after changes.
    """

    def __init__(
        self,
        reports: ReportManager,
        sink: DeliverySink,
        config: AnalyticsConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
        state_path: Path | str | None = None,
    ) -> None:
        self.reports = reports
        self.sink = sink
        self.config = config or reports.config
        self.retry = RetryPolicy(
            max_attempts=self.config.max_attempts,
            backoff_seconds=self.config.backoff_seconds,
            backoff_max_seconds=self.config.backoff_max_seconds,
        )
        self._clock = clock
        self._sleep = sleep
        if state_path is None and self.config.scheduler_state_path:
            state_path = self.config.scheduler_state_path
        self._state_path = Path(state_path) if state_path is not None else None

        self._lock = threading.Lock()
        self._schedules: dict[str, ScheduledReport] = {}
        self._parsed: dict[str, Schedule] = {}
        self._run_locks: dict[str, threading.Lock] = {}
        self._futures: set[Future] = set()
        self._executor: ThreadPoolExecutor | None = None
        self._timer: threading.Timer | None = None
        self._running = False
        self._interval_seconds = self.config.scheduler_tick_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def add(self, scheduled: ScheduledReport | dict[str, Any]) -> ScheduledReport:
        """Validate and register a scheduled report.

        The first due time is one period after ``last_run_at`` when given,
        otherwise one period from now.

        Raises
        ------
        ValidationError
            Unknown report, bad schedule expression, no recipients,
            invalid parameters or a duplicate id.
        """
        if not isinstance(scheduled, ScheduledReport):
            try:
                scheduled = ScheduledReport.model_validate(scheduled)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid scheduled report: {exc}") from exc

        schedule = parse_schedule(scheduled.schedule)
        if not scheduled.recipients:
            raise ValidationError("Scheduled report must have at least one recipient")
        definition = self.reports.get(scheduled.report_id)
        resolve_parameters(definition, scheduled.parameters)

        entry = scheduled.model_copy(deep=True)
        if entry.status == ScheduleStatus.RUNNING:
            entry.status = ScheduleStatus.IDLE
        if entry.next_run_at is None:
            entry.next_run_at = schedule.next_after(entry.last_run_at or self._clock())

        with self._lock:
            if entry.id in self._schedules:
                raise ValidationError(f"Scheduled report {entry.id!r} already exists")
            self._schedules[entry.id] = entry
            self._parsed[entry.id] = schedule
            self._run_locks[entry.id] = threading.Lock()
        logger.info(
            "Scheduled report %s (%s) next at %s",
            entry.report_id, entry.schedule, entry.next_run_at.isoformat(),
        )
        self._save_state()
        return entry.model_copy(deep=True)

    def remove(self, scheduled_id: str) -> bool:
        with self._lock:
            removed = self._schedules.pop(scheduled_id, None)
            self._parsed.pop(scheduled_id, None)
            self._run_locks.pop(scheduled_id, None)
        if removed is not None:
            logger.info("Removed scheduled report %s", scheduled_id)
            self._save_state()
        return removed is not None

    def get(self, scheduled_id: str) -> ScheduledReport:
        """Return a snapshot of one scheduled report."""
        with self._lock:
            entry = self._schedules.get(scheduled_id)
            if entry is None:
                raise ValidationError(f"Scheduled report {scheduled_id!r} not found")
            return entry.model_copy(deep=True)

    def list(self) -> list[ScheduledReport]:
        with self._lock:
            return [self._schedules[k].model_copy(deep=True) for k in sorted(self._schedules)]

    def reset(self, scheduled_id: str) -> ScheduledReport:
        """Return a failed report to idle so it runs again on its schedule."""
        run_lock = self._run_lock(scheduled_id)
        with run_lock:
            with self._lock:
                entry = self._schedules[scheduled_id]
                if entry.status == ScheduleStatus.RUNNING:
                    raise SchedulerError(f"Scheduled report {scheduled_id!r} is running")
                entry.status = ScheduleStatus.IDLE
                entry.attempts = 0
                entry.last_error = None
                entry.next_run_at = self._parsed[scheduled_id].next_after(self._clock())
                snapshot = entry.model_copy(deep=True)
        logger.info("Reset scheduled report %s", scheduled_id)
        self._save_state()
        return snapshot

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> TickResult:
        """Dispatch every due report to the worker pool.

        Reports still running from a previous dispatch are skipped.
        """
        now = now or self._clock()
        result = TickResult()
        with self._lock:
            due = [
                s.id for s in self._schedules.values()
                if s.enabled
                and s.status != ScheduleStatus.FAILED
                and s.next_run_at is not None
                and s.next_run_at <= now
            ]

        for scheduled_id in sorted(due):
            try:
                claimed = self._claim(scheduled_id)
            except ValidationError:
                # Removed since the due scan.
                continue
            if not claimed:
                err = SchedulerError(f"Scheduled report {scheduled_id!r} is still running; skipped")
                logger.warning("%s", err)
                result.skipped.append(scheduled_id)
                continue
            future = self._pool().submit(self._run, scheduled_id, now)
            with self._lock:
                self._futures.add(future)
            future.add_done_callback(self._forget)
            result.dispatched.append(scheduled_id)
            logger.info("Dispatched scheduled report %s", scheduled_id)
        return result

    def run_now(self, scheduled_id: str) -> ScheduledReport:
        """Run one scheduled report synchronously on the calling thread.

        Raises
        ------
        SchedulerError
            If the report is already running.
        """
        if not self._claim(scheduled_id):
            raise SchedulerError(f"Scheduled report {scheduled_id!r} is already running")
        self._run(scheduled_id, self._clock())
        return self.get(scheduled_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until dispatched runs finish; False on timeout."""
        with self._lock:
            pending = set(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _claim(self, scheduled_id: str) -> bool:
        """Move *scheduled_id* to running unless it already is."""
        run_lock = self._run_lock(scheduled_id)
        with run_lock:
            with self._lock:
                entry = self._schedules.get(scheduled_id)
                if entry is None:
                    raise ValidationError(f"Scheduled report {scheduled_id!r} not found")
                if entry.status == ScheduleStatus.RUNNING:
                    return False
                entry.status = ScheduleStatus.RUNNING
                entry.attempts = 0
        return True

    def _run(self, scheduled_id: str, now: datetime) -> None:
        """Execute, deliver and record the outcome of one claimed run."""
        with self._lock:
            entry = self._schedules.get(scheduled_id)
            if entry is None:
                return
            job = entry.model_copy(deep=True)

        error: PivotalError | None = None
        attempt = 0
        try:
            for attempt in range(1, self.retry.max_attempts + 1):
                try:
                    self._execute_and_deliver(job)
                    error = None
                    break
                except ValidationError as exc:
                    error = exc
                    break
                except ExecutionError as exc:
                    error = exc
                    if attempt < self.retry.max_attempts:
                        delay = self.retry.delay(attempt)
                        logger.warning(
                            "Scheduled report %s attempt %d/%d failed: %s; retrying in %.1fs",
                            scheduled_id, attempt, self.retry.max_attempts, exc, delay,
                        )
                        self._sleep(delay)
        except Exception as exc:
            logger.exception("Scheduled report %s crashed", scheduled_id)
            error = SchedulerError(f"Unexpected error: {exc}")

        self._finish(scheduled_id, now, attempt, error)

    def _execute_and_deliver(self, job: ScheduledReport) -> None:
        result = self.reports.execute_report(
            job.report_id,
            job.parameters,
            job.security_context(),
            format=job.format,
        )
        try:
            delivered = self.sink.deliver(result, job.recipients)
        except PivotalError:
            raise
        except Exception as exc:
            raise DeliveryError(f"Delivery of {job.report_id!r} raised: {exc}") from exc
        if not delivered:
            raise DeliveryError(f"Delivery of {job.report_id!r} was not accepted")

    def _finish(self, scheduled_id: str, now: datetime, attempts: int, error: PivotalError | None) -> None:
        with self._lock:
            run_lock = self._run_locks.get(scheduled_id)
            schedule = self._parsed.get(scheduled_id)
        if run_lock is None or schedule is None:
            logger.info("Scheduled report %s was removed while running", scheduled_id)
            return

        delivered = error is None
        next_run_at = None
        if delivered:
            try:
                next_run_at = schedule.next_after(now)
            except ValidationError as exc:
                error = SchedulerError(f"Cannot compute the next run: {exc}")

        with run_lock:
            with self._lock:
                entry = self._schedules.get(scheduled_id)
                if entry is None:
                    return
                entry.attempts = attempts
                if delivered:
                    entry.last_run_at = now
                    entry.run_count += 1
                if error is None:
                    entry.status = ScheduleStatus.IDLE
                    entry.next_run_at = next_run_at
                    entry.last_error = None
                else:
                    entry.status = ScheduleStatus.FAILED
                    entry.last_error = f"{type(error).__name__}: {error}"

        if error is None:
            logger.info("Scheduled report %s completed after %d attempt(s)", scheduled_id, attempts)
        else:
            logger.error("Scheduled report %s failed after %d attempt(s): %s", scheduled_id, attempts, error)
        self._save_state()

    def _run_lock(self, scheduled_id: str) -> threading.Lock:
        with self._lock:
            run_lock = self._run_locks.get(scheduled_id)
        if run_lock is None:
            raise ValidationError(f"Scheduled report {scheduled_id!r} not found")
        return run_lock

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.scheduler_workers,
                    thread_name_prefix="pivotal-scheduler",
                )
            return self._executor

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self, interval_seconds: float | None = None) -> None:
        """Start the periodic tick loop.

        Parameters
        ----------
        interval_seconds:
            Seconds between ticks (default ``scheduler_tick_seconds``).
        """
        if self._running:
            return
        if interval_seconds is not None:
            self._interval_seconds = interval_seconds
        self._running = True
        self._schedule_next()
        logger.info("Started report scheduler, ticking every %.1f seconds", self._interval_seconds)

    def stop(self, wait_for_runs: bool = False) -> None:
        """Stop the periodic loop and release the worker pool."""
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_runs)
        self._save_state()
        logger.info("Stopped report scheduler")

    def _schedule_next(self) -> None:
        """Schedule the next tick using threading.Timer."""
        if not self._running:
            return
        self._timer = threading.Timer(self._interval_seconds, self._run_tick)
        self._timer.daemon = True
        self._timer.start()

    def _run_tick(self) -> None:
        """Execute a tick and reschedule."""
        if not self._running:
            return
        try:
            self.tick()
        except Exception:
            logger.exception("Scheduler tick failed")
        finally:
            self._schedule_next()

    # ------------------------------------------------------------------
    # State snapshot
    # ------------------------------------------------------------------

    def _save_state(self) -> None:
        """Persist all schedules to the snapshot file, if configured."""
        if self._state_path is None:
            return
        with self._lock:
            state = {
                "running": self._running,
                "saved_at": _utc_now().isoformat(),
                "schedules": [s.model_dump(mode="json") for s in self._schedules.values()],
            }
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(json.dumps(state, indent=2), encoding="utf-8")
        except OSError:
            logger.warning("Failed to save scheduler state to %s", self._state_path, exc_info=True)

    def load_state(self) -> int:
        """Re-register schedules from the snapshot file.

        Entries whose report no longer exists or that are already
        registered are skipped.  Returns the number restored.
        """
        if self._state_path is None or not self._state_path.is_file():
            return 0
        try:
            state = json.loads(self._state_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Could not read scheduler state %s", self._state_path, exc_info=True)
            return 0

        restored = 0
        for raw in state.get("schedules", []):
            try:
                self.add(raw)
                restored += 1
            except ValidationError as exc:
                logger.warning("Skipping saved schedule %s: %s", raw.get("id"), exc)
        return restored
