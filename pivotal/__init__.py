"""Pivotal — metadata-driven analytics and reporting engine."""

__version__ = "0.1.0"

from pivotal.aggregation.engine import AggregationEngine
from pivotal.aggregation.pipeline import AggregationPipeline, AggregationResult, parse_pipeline
from pivotal.cancellation import CancellationToken
from pivotal.context import SecurityContext
from pivotal.dashboards.manager import DashboardManager
from pivotal.dashboards.models import DashboardDefinition, DashboardLayout, DashboardWidget
from pivotal.errors import (
    DashboardNotFoundError,
    DeliveryError,
    ExecutionError,
    PivotalError,
    PluginStartupError,
    ReportNotFoundError,
    SchedulerError,
    SchemaError,
    TimeoutError,
    ValidationError,
)
from pivotal.plugin.host import PluginHost
from pivotal.plugin.plugin import AnalyticsPlugin
from pivotal.reports.manager import ReportManager
from pivotal.reports.models import ReportDefinition, ReportFormat, ReportParameter, ReportResult
from pivotal.scheduling.delivery import DeliverySink, LogDeliverySink, WebhookDeliverySink
from pivotal.scheduling.models import ScheduledReport, ScheduleStatus
from pivotal.scheduling.scheduler import ReportScheduler
from pivotal.settings import AnalyticsConfig, ConfigManager
from pivotal.store import InMemoryRecordStore, ObjectSchema, RecordStore

__all__ = [
    "__version__",
    # Façade
    "AnalyticsPlugin",
    "PluginHost",
    # Aggregation
    "AggregationEngine",
    "AggregationPipeline",
    "AggregationResult",
    "parse_pipeline",
    # Reports
    "ReportDefinition",
    "ReportFormat",
    "ReportManager",
    "ReportParameter",
    "ReportResult",
    # Dashboards
    "DashboardDefinition",
    "DashboardLayout",
    "DashboardManager",
    "DashboardWidget",
    # Scheduling
    "DeliverySink",
    "LogDeliverySink",
    "ReportScheduler",
    "ScheduleStatus",
    "ScheduledReport",
    "WebhookDeliverySink",
    # Boundaries
    "AnalyticsConfig",
    "CancellationToken",
    "ConfigManager",
    "InMemoryRecordStore",
    "ObjectSchema",
    "RecordStore",
    "SecurityContext",
    # Errors
    "DashboardNotFoundError",
    "DeliveryError",
    "ExecutionError",
    "PivotalError",
    "PluginStartupError",
    "ReportNotFoundError",
    "SchedulerError",
    "SchemaError",
    "TimeoutError",
    "ValidationError",
]
