"""Recurring report execution and delivery."""

from pivotal.scheduling.delivery import DeliverySink, LogDeliverySink, WebhookDeliverySink
from pivotal.scheduling.models import RetryPolicy, ScheduledReport, ScheduleStatus, TickResult
from pivotal.scheduling.schedule import CronSchedule, IntervalSchedule, Schedule, parse_schedule
from pivotal.scheduling.scheduler import ReportScheduler

__all__ = [
    "CronSchedule",
    "DeliverySink",
    "IntervalSchedule",
    "LogDeliverySink",
    "ReportScheduler",
    "RetryPolicy",
    "Schedule",
    "ScheduleStatus",
    "ScheduledReport",
    "TickResult",
    "WebhookDeliverySink",
    "parse_schedule",
]
