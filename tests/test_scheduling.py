"""Tests for schedule parsing, the report scheduler and delivery sinks."""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from pivotal.errors import ReportNotFoundError, SchedulerError, ValidationError
from pivotal.reports import ReportManager
from pivotal.reports.models import ReportResult
from pivotal.scheduling import (
    CronSchedule,
    DeliverySink,
    IntervalSchedule,
    LogDeliverySink,
    ReportScheduler,
    RetryPolicy,
    Schedule,
    ScheduleStatus,
    WebhookDeliverySink,
    parse_schedule,
)
from pivotal.settings import AnalyticsConfig
from pivotal.store import InMemoryRecordStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)  # a Friday


# ── Fixtures ──────────────────────────────────────────────────


TASKS = [
    {"id": 1, "status": "open", "tenant_id": "t1"},
    {"id": 2, "status": "open", "tenant_id": "t2"},
    {"id": 3, "status": "done", "tenant_id": "t1"},
]


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FlakySink(DeliverySink):
    """Rejects the first *failures* deliveries, then accepts."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def deliver(self, result, recipients):
        self.calls += 1
        return self.calls > self.failures


class BlockingSink(DeliverySink):
    def __init__(self) -> None:
        self.release = threading.Event()
        self.delivered = 0

    def deliver(self, result, recipients):
        self.release.wait(timeout=5)
        self.delivered += 1
        return True


@pytest.fixture
def reports() -> ReportManager:
    store = InMemoryRecordStore({"task": TASKS})
    manager = ReportManager(store, AnalyticsConfig(cache_enabled=False))
    manager.register({
        "id": "by-status",
        "name": "Tasks by status",
        "pipeline": {"object_name": "task", "stages": [{"group": {"by": "status", "count": True}}]},
    })
    return manager


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def delays() -> list[float]:
    return []


def _scheduler(reports, sink, clock, delays, **kwargs) -> ReportScheduler:
    return ReportScheduler(reports, sink, clock=clock, sleep=delays.append, **kwargs)


def _hourly(**overrides):
    data = {
        "id": "s1",
        "report_id": "by-status",
        "schedule": "every 1 hour",
        "recipients": ["ops@example.com"],
    }
    data.update(overrides)
    return data


# ── Schedule expressions ──────────────────────────────────────


class TestParseSchedule:
    def test_interval(self) -> None:
        schedule = parse_schedule("every 15 minutes")
        assert isinstance(schedule, IntervalSchedule)
        assert schedule.next_after(NOW) == NOW + timedelta(minutes=15)

    def test_interval_units_and_case(self) -> None:
        assert parse_schedule("Every 2 Hours").next_after(NOW) == NOW + timedelta(hours=2)
        assert parse_schedule("every 1 week").next_after(NOW) == NOW + timedelta(weeks=1)
        assert parse_schedule("every  3   days").next_after(NOW) == NOW + timedelta(days=3)

    def test_macros(self) -> None:
        assert parse_schedule("@daily").next_after(NOW) == datetime(2024, 3, 2, 0, 0, tzinfo=timezone.utc)
        assert parse_schedule("@hourly").next_after(NOW) == datetime(2024, 3, 1, 13, 0, tzinfo=timezone.utc)
        assert parse_schedule("@weekly").next_after(NOW) == datetime(2024, 3, 3, 0, 0, tzinfo=timezone.utc)
        assert parse_schedule("@monthly").next_after(NOW) == datetime(2024, 4, 1, 0, 0, tzinfo=timezone.utc)

    def test_cron_step(self) -> None:
        schedule = parse_schedule("*/15 * * * *")
        assert isinstance(schedule, CronSchedule)
        moment = NOW.replace(minute=7, second=30)
        assert schedule.next_after(moment) == NOW.replace(minute=15)

    def test_cron_weekday(self) -> None:
        # Friday noon -> Monday 09:00
        assert parse_schedule("0 9 * * 1").next_after(NOW) == datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

    def test_cron_day_list(self) -> None:
        assert parse_schedule("30 8 1,15 * *").next_after(NOW) == datetime(2024, 3, 15, 8, 30, tzinfo=timezone.utc)

    def test_cron_hour_range_rolls_to_next_day(self) -> None:
        moment = NOW.replace(hour=17, minute=30)
        assert parse_schedule("0 9-17 * * *").next_after(moment) == datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_next_is_strictly_after(self) -> None:
        assert parse_schedule("0 12 * * *").next_after(NOW) == NOW + timedelta(days=1)

    def test_leap_day(self) -> None:
        moment = datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert parse_schedule("0 0 29 2 *").next_after(moment) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_sparse_weekday_and_date(self) -> None:
        # Friday the 13th: 427 days separate July 2018 from September 2019
        moment = datetime(2018, 7, 13, tzinfo=timezone.utc)
        assert parse_schedule("0 0 13 * 5").next_after(moment) == datetime(2019, 9, 13, tzinfo=timezone.utc)

    def test_leap_day_on_weekday(self) -> None:
        moment = datetime(2024, 3, 1, tzinfo=timezone.utc)
        # next Feb 29 falling on a Monday
        assert parse_schedule("0 0 29 2 1").next_after(moment) == datetime(2044, 2, 29, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression", [
        "",
        "   ",
        "every 0 hours",
        "every 5 fortnights",
        "@yearly",
        "61 * * * *",
        "* * *",
        "*/0 * * * *",
        "5-2 * * * *",
        "0 0 31 2 *",
        "0 0 30,31 2 *",
        "a b c d e",
    ])
    def test_invalid(self, expression: str) -> None:
        with pytest.raises(ValidationError):
            parse_schedule(expression)


class TestRetryPolicy:
    def test_exponential_backoff_is_capped(self) -> None:
        policy = RetryPolicy(max_attempts=5, backoff_seconds=1, backoff_max_seconds=5)
        assert [policy.delay(n) for n in range(1, 5)] == [1, 2, 4, 5]


# ── Scheduler registry ────────────────────────────────────────


class TestRegistry:
    def test_first_run_one_period_from_now(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        entry = scheduler.add(_hourly())
        assert entry.status == ScheduleStatus.IDLE
        assert entry.next_run_at == NOW + timedelta(hours=1)

    def test_first_run_after_last_run(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        entry = scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))
        assert entry.next_run_at == NOW - timedelta(hours=1)

    def test_requires_recipients(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        with pytest.raises(ValidationError):
            scheduler.add(_hourly(recipients=[]))

    def test_unknown_report(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        with pytest.raises(ReportNotFoundError):
            scheduler.add(_hourly(report_id="ghost"))

    def test_bad_expression(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        with pytest.raises(ValidationError):
            scheduler.add(_hourly(schedule="whenever"))

    def test_undeclared_parameters(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        with pytest.raises(ValidationError):
            scheduler.add(_hourly(parameters={"region": "eu"}))

    def test_duplicate_id(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        scheduler.add(_hourly())
        with pytest.raises(ValidationError):
            scheduler.add(_hourly())

    def test_remove_and_list(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        scheduler.add(_hourly(id="b"))
        scheduler.add(_hourly(id="a"))
        assert [s.id for s in scheduler.list()] == ["a", "b"]
        assert scheduler.remove("a") is True
        assert scheduler.remove("a") is False
        with pytest.raises(ValidationError):
            scheduler.get("a")

    def test_get_returns_snapshot(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        scheduler.add(_hourly())
        snapshot = scheduler.get("s1")
        snapshot.status = ScheduleStatus.FAILED
        assert scheduler.get("s1").status == ScheduleStatus.IDLE


# ── Dispatch ──────────────────────────────────────────────────


class TestDispatch:
    def test_due_report_runs_and_reschedules(self, reports, clock, delays) -> None:
        sink = LogDeliverySink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))

        result = scheduler.tick()
        assert result.dispatched == ["s1"]
        assert scheduler.wait_idle(timeout=5)

        entry = scheduler.get("s1")
        assert entry.status == ScheduleStatus.IDLE
        assert entry.last_run_at == NOW
        assert entry.next_run_at == NOW + timedelta(hours=1)
        assert entry.run_count == 1
        assert entry.attempts == 1

        [delivery] = sink.log
        assert delivery["report_id"] == "by-status"
        assert delivery["recipients"] == ["ops@example.com"]
        assert delivery["row_count"] == 2
        scheduler.stop()

    def test_not_due_yet(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        scheduler.add(_hourly())
        assert scheduler.tick().dispatched == []
        assert scheduler.tick(NOW + timedelta(hours=1)).dispatched == ["s1"]
        scheduler.wait_idle(timeout=5)
        scheduler.stop()

    def test_disabled_never_dispatched(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        scheduler.add(_hourly(enabled=False, last_run_at=NOW - timedelta(hours=2)))
        assert scheduler.tick().dispatched == []

    def test_running_report_is_skipped_not_queued(self, reports, clock, delays) -> None:
        sink = BlockingSink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))
        try:
            first = scheduler.tick()
            second = scheduler.tick(NOW + timedelta(minutes=5))
            assert first.dispatched == ["s1"]
            assert second.dispatched == []
            assert second.skipped == ["s1"]
            assert scheduler.get("s1").status == ScheduleStatus.RUNNING
        finally:
            sink.release.set()
        assert scheduler.wait_idle(timeout=5)
        assert sink.delivered == 1
        assert scheduler.get("s1").run_count == 1
        scheduler.stop()

    def test_run_now_rejects_running(self, reports, clock, delays) -> None:
        sink = BlockingSink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))
        try:
            scheduler.tick()
            with pytest.raises(SchedulerError):
                scheduler.run_now("s1")
            with pytest.raises(SchedulerError):
                scheduler.reset("s1")
        finally:
            sink.release.set()
        scheduler.wait_idle(timeout=5)
        scheduler.stop()

    def test_run_now(self, reports, clock, delays) -> None:
        sink = LogDeliverySink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(format="csv"))
        entry = scheduler.run_now("s1")
        assert entry.run_count == 1
        assert sink.log[0]["format"] == "csv"
        assert sink.log[0]["content"].splitlines()[0] == "status,count"

    def test_tenant_scoped_run(self, reports, clock, delays) -> None:
        sink = LogDeliverySink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(tenant_id="t2"))
        scheduler.run_now("s1")
        assert sink.log[0]["row_count"] == 1

    def test_sparse_cron_runs_once_per_match(self, reports, delays) -> None:
        utc = timezone.utc
        clock = FakeClock(datetime(2018, 7, 1, tzinfo=utc))
        sink = LogDeliverySink()
        scheduler = _scheduler(reports, sink, clock, delays)
        entry = scheduler.add(_hourly(id="f13", schedule="0 0 13 * 5"))
        assert entry.next_run_at == datetime(2018, 7, 13, tzinfo=utc)

        assert scheduler.tick(datetime(2018, 7, 13, tzinfo=utc)).dispatched == ["f13"]
        assert scheduler.wait_idle(timeout=5)

        entry = scheduler.get("f13")
        assert entry.status == ScheduleStatus.IDLE
        assert entry.run_count == 1
        assert entry.next_run_at == datetime(2019, 9, 13, tzinfo=utc)

        assert scheduler.tick(datetime(2018, 7, 13, 0, 1, tzinfo=utc)).dispatched == []
        assert len(sink.log) == 1
        scheduler.stop()

    def test_removed_while_running(self, reports, clock, delays) -> None:
        sink = BlockingSink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))
        try:
            assert scheduler.tick().dispatched == ["s1"]
            in_flight = list(scheduler._futures)
            assert scheduler.remove("s1")
        finally:
            sink.release.set()
        assert scheduler.wait_idle(timeout=5)
        assert all(future.exception() is None for future in in_flight)
        assert scheduler.list() == []
        scheduler.stop()


class TestRetries:
    def test_retries_with_backoff_then_fails(self, reports, clock, delays) -> None:
        sink = FlakySink(failures=10)
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly())

        entry = scheduler.run_now("s1")
        assert sink.calls == 3
        assert delays == [1.0, 2.0]
        assert entry.status == ScheduleStatus.FAILED
        assert entry.attempts == 3
        assert entry.last_error.startswith("DeliveryError")
        assert entry.run_count == 0

    def test_recovers_on_retry(self, reports, clock, delays) -> None:
        sink = FlakySink(failures=1)
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly())

        entry = scheduler.run_now("s1")
        assert delays == [1.0]
        assert entry.status == ScheduleStatus.IDLE
        assert entry.attempts == 2
        assert entry.last_error is None

    def test_validation_error_not_retried(self, reports, clock, delays) -> None:
        sink = LogDeliverySink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly())
        reports.delete("by-status")

        entry = scheduler.run_now("s1")
        assert delays == []
        assert entry.attempts == 1
        assert entry.status == ScheduleStatus.FAILED
        assert entry.last_error.startswith("ReportNotFoundError")
        assert sink.log == []

    def test_sink_exception_becomes_delivery_error(self, reports, clock, delays) -> None:
        sink = MagicMock(spec=DeliverySink)
        sink.deliver.side_effect = RuntimeError("smtp down")
        scheduler = _scheduler(reports, sink, clock, delays, config=AnalyticsConfig(max_attempts=2))
        scheduler.add(_hourly())

        entry = scheduler.run_now("s1")
        assert sink.deliver.call_count == 2
        assert entry.status == ScheduleStatus.FAILED
        assert "smtp down" in entry.last_error

    def test_failed_report_waits_for_reset(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, FlakySink(failures=3), clock, delays)
        scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))
        scheduler.run_now("s1")

        assert scheduler.tick(NOW + timedelta(days=1)).dispatched == []

        entry = scheduler.reset("s1")
        assert entry.status == ScheduleStatus.IDLE
        assert entry.last_error is None
        assert entry.next_run_at == NOW + timedelta(hours=1)

    def test_reset_unknown(self, reports, clock, delays) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays)
        with pytest.raises(ValidationError):
            scheduler.reset("nope")

    def test_no_next_run_fails_instead_of_rerunning(self, reports, clock, delays) -> None:
        class Exhausted(Schedule):
            def next_after(self, moment):
                raise ValidationError("no further matches")

        sink = LogDeliverySink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))
        scheduler._parsed["s1"] = Exhausted("exhausted")

        entry = scheduler.run_now("s1")
        assert entry.status == ScheduleStatus.FAILED
        assert entry.run_count == 1
        assert entry.last_run_at == NOW
        assert entry.last_error.startswith("SchedulerError")
        assert scheduler.tick(NOW + timedelta(minutes=1)).dispatched == []
        assert len(sink.log) == 1


# ── Background loop and state ─────────────────────────────────


class TestLifecycle:
    def test_start_ticks_until_stopped(self, reports, clock, delays) -> None:
        sink = LogDeliverySink()
        scheduler = _scheduler(reports, sink, clock, delays)
        scheduler.add(_hourly(last_run_at=NOW - timedelta(hours=2)))

        scheduler.start(interval_seconds=0.02)
        assert scheduler.is_running
        deadline = time.monotonic() + 5
        while not sink.log and time.monotonic() < deadline:
            time.sleep(0.01)
        scheduler.stop(wait_for_runs=True)

        assert not scheduler.is_running
        assert len(sink.log) == 1
        assert scheduler.get("s1").run_count == 1

    def test_state_snapshot_round_trip(self, reports, clock, delays, tmp_path) -> None:
        state_path = tmp_path / "scheduler" / "state.json"
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays, state_path=state_path)
        scheduler.add(_hourly())
        scheduler.add(_hourly(id="s2", schedule="@daily"))

        state = json.loads(state_path.read_text(encoding="utf-8"))
        assert [s["id"] for s in state["schedules"]] == ["s1", "s2"]
        assert state["running"] is False

        restored = _scheduler(reports, LogDeliverySink(), clock, delays, state_path=state_path)
        assert restored.load_state() == 2
        assert restored.get("s1").next_run_at == scheduler.get("s1").next_run_at
        assert restored.get("s2").schedule == "@daily"

    def test_load_state_skips_stale_entries(self, reports, clock, delays, tmp_path) -> None:
        state_path = tmp_path / "state.json"
        state_path.write_text(json.dumps({"schedules": [
            _hourly(),
            _hourly(id="s2", report_id="deleted-report"),
        ]}), encoding="utf-8")
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays, state_path=state_path)
        assert scheduler.load_state() == 1

    def test_load_state_without_file(self, reports, clock, delays, tmp_path) -> None:
        scheduler = _scheduler(reports, LogDeliverySink(), clock, delays, state_path=tmp_path / "none.json")
        assert scheduler.load_state() == 0


# ── Delivery sinks ────────────────────────────────────────────


@pytest.fixture
def result(reports) -> ReportResult:
    return reports.execute_report("by-status")


class TestLogDeliverySink:
    def test_records_payload(self, result: ReportResult) -> None:
        sink = LogDeliverySink()
        assert sink.is_available()
        assert sink.deliver(result, ["a@example.com", "b@example.com"])
        [entry] = sink.log
        assert entry["report_name"] == "Tasks by status"
        assert entry["format"] == "json"
        assert entry["recipients"] == ["a@example.com", "b@example.com"]
        assert json.loads(entry["content"]) == result.rows


class TestWebhookDeliverySink:
    URL = "https://hooks.example.com/reports"

    def test_posts_json(self, result: ReportResult) -> None:
        sink = WebhookDeliverySink(self.URL, timeout=3)
        with patch("pivotal.scheduling.delivery.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=200)
            assert sink.deliver(result, ["ops@example.com"])

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == self.URL
        assert kwargs["timeout"] == 3
        assert kwargs["json"]["report_id"] == "by-status"
        assert kwargs["json"]["recipients"] == ["ops@example.com"]

    def test_rejected_status(self, result: ReportResult) -> None:
        sink = WebhookDeliverySink(self.URL)
        with patch("pivotal.scheduling.delivery.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=500)
            assert sink.deliver(result, ["ops@example.com"]) is False

    def test_network_error(self, result: ReportResult) -> None:
        sink = WebhookDeliverySink(self.URL)
        with patch("pivotal.scheduling.delivery.requests.post") as mock_post:
            mock_post.side_effect = requests.ConnectionError("refused")
            assert sink.deliver(result, ["ops@example.com"]) is False

    def test_no_url(self, result: ReportResult) -> None:
        sink = WebhookDeliverySink()
        assert not sink.is_available()
        with patch("pivotal.scheduling.delivery.requests.post") as mock_post:
            assert sink.deliver(result, ["ops@example.com"]) is False
        mock_post.assert_not_called()
