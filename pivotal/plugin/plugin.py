"""AnalyticsPlugin — the host-facing entry point of the analytics subsystem.

Usage::

    from pivotal import AnalyticsPlugin, InMemoryRecordStore, LogDeliverySink, PluginHost

    host = PluginHost(
        granted_permissions=AnalyticsPlugin().security().permissions,
        services={"data": InMemoryRecordStore(), "notification": LogDeliverySink()},
    )
    plugin = AnalyticsPlugin()
    result = plugin.start(host)
    plugin.register_report({...})
    plugin.execute_report(report_id, {"minAge": 18}, context)
    plugin.resolve_dashboard(dashboard_id, context)
    plugin.health()
    plugin.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, TypeVar

from pivotal import __version__
from pivotal.aggregation.engine import AggregationEngine
from pivotal.aggregation.pipeline import AggregationResult, coerce_pipeline
from pivotal.cancellation import CancellationToken
from pivotal.context import SecurityContext
from pivotal.dashboards.manager import DashboardManager
from pivotal.dashboards.models import DashboardDefinition, DashboardLayout
from pivotal.errors import PivotalError, PluginStartupError
from pivotal.plugin.host import PluginHost
from pivotal.plugin.manifests import (
    CORE_PERMISSIONS,
    SCHEDULE_PERMISSIONS,
    CheckResult,
    PluginCapabilityManifest,
    PluginHealthReport,
    PluginSecurityManifest,
    PluginStartupResult,
)
from pivotal.reports.manager import ReportManager
from pivotal.reports.models import ReportDefinition, ReportListOptions, ReportPage, ReportResult
from pivotal.scheduling.delivery import DeliverySink, WebhookDeliverySink
from pivotal.scheduling.models import ScheduledReport, ScheduleStatus
from pivotal.scheduling.scheduler import ReportScheduler
from pivotal.settings import AnalyticsConfig
from pivotal.store import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_NAME = "analytics"

# Below this many lookups the eviction ratio says nothing.
_CACHE_MIN_MISSES = 20
_CACHE_MAX_EVICTION_RATIO = 0.5


class AnalyticsPlugin:
    """Wire the engine, report, dashboard and scheduler layers to a host.

    Nothing is usable until :meth:`start` succeeds.  A failed start
    leaves the plugin disabled: every public call raises
    :class:`PluginStartupError`.

    Parameters
    ----------
    config:
        Analytics settings; defaults to :class:`AnalyticsConfig` defaults.
    """

    name = "pivotal-analytics"
    version = __version__

    def __init__(self, config: AnalyticsConfig | None = None) -> None:
        self.config = config or AnalyticsConfig()
        logging.getLogger("pivotal").setLevel(self.config.log_level.upper())
        self._host: PluginHost | None = None
        self._engine: AggregationEngine | None = None
        self._reports: ReportManager | None = None
        self._dashboards: DashboardManager | None = None
        self._scheduler: ReportScheduler | None = None
        self._started = False
        self._disabled = False
        self._disabled_reason = ""
        self._started_at: float | None = None
        self._stats_lock = threading.Lock()
        self._request_count = 0
        self._error_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def required_capabilities(self) -> list[str]:
        required = ["data"]
        if self.config.scheduler_enabled and not self.config.webhook_url:
            required.append("notification")
        return required

    def start(self, host: PluginHost) -> PluginStartupResult:
        """Check the host's capabilities and permissions, then activate.

        Either everything is activated or nothing is; on failure the
        plugin stays disabled.
        """
        if self._started:
            return PluginStartupResult(success=True, message="Already started")

        missing_caps = [c for c in self.required_capabilities() if not host.has_capability(c)]
        missing_perms = [p for p in self.security().permissions if p not in host.granted_permissions]
        if missing_caps or missing_perms:
            parts = []
            if missing_caps:
                parts.append(f"missing capabilities: {', '.join(missing_caps)}")
            if missing_perms:
                parts.append(f"missing permissions: {', '.join(missing_perms)}")
            return self._fail("; ".join(parts), missing_caps, missing_perms)

        store = host.get_service("data")
        if not isinstance(store, RecordStore):
            return self._fail("The 'data' service is not a RecordStore", ["data"], [])
        sink = host.get_service("notification")
        if sink is None and self.config.webhook_url:
            sink = WebhookDeliverySink(self.config.webhook_url)
        if self.config.scheduler_enabled and not isinstance(sink, DeliverySink):
            return self._fail("The 'notification' service is not a DeliverySink", ["notification"], [])

        engine = AggregationEngine(self.config)
        reports = ReportManager(store, self.config, engine=engine)
        dashboards = DashboardManager(reports, self.config)
        scheduler = ReportScheduler(reports, sink, self.config) if self.config.scheduler_enabled else None

        try:
            host.register_service(SERVICE_NAME, self)
            if scheduler is not None:
                scheduler.load_state()
                scheduler.start()
        except Exception as exc:
            if scheduler is not None:
                scheduler.stop()
            if host.get_service(SERVICE_NAME) is self:
                host.unregister_service(SERVICE_NAME)
            logger.exception("Analytics plugin activation failed")
            return self._fail(f"Activation failed: {exc}", [], [])

        self._host = host
        self._engine = engine
        self._reports = reports
        self._dashboards = dashboards
        self._scheduler = scheduler
        self._started = True
        self._disabled = False
        self._disabled_reason = ""
        self._started_at = time.monotonic()
        logger.info("Analytics plugin %s started", self.version)
        return PluginStartupResult(success=True, message="Analytics started")

    def stop(self) -> None:
        """Stop the scheduler and withdraw the analytics service."""
        if not self._started:
            return
        if self._scheduler is not None:
            self._scheduler.stop()
        if self._host is not None:
            self._host.unregister_service(SERVICE_NAME)
        self._started = False
        logger.info("Analytics plugin stopped")

    def _fail(self, message: str, missing_caps: list[str], missing_perms: list[str]) -> PluginStartupResult:
        self._disabled = True
        self._disabled_reason = message
        logger.error("Analytics plugin failed to start: %s", message)
        return PluginStartupResult(
            success=False,
            message=message,
            missing_capabilities=missing_caps,
            missing_permissions=missing_perms,
        )

    # ------------------------------------------------------------------
    # Manifests and health
    # ------------------------------------------------------------------

    def capabilities(self) -> PluginCapabilityManifest:
        provides = [SERVICE_NAME, "analytics.aggregation", "analytics.reports", "analytics.dashboards"]
        if self.config.scheduler_enabled:
            provides.append("analytics.scheduler")
        return PluginCapabilityManifest(
            id=self.name,
            version=self.version,
            provides=provides,
            consumes=self.required_capabilities(),
        )

    def security(self) -> PluginSecurityManifest:
        permissions = list(CORE_PERMISSIONS)
        if self.config.scheduler_enabled:
            permissions.extend(SCHEDULE_PERMISSIONS)
        return PluginSecurityManifest(permissions=permissions, data_access=["read"])

    def health(self) -> PluginHealthReport:
        """Report lifecycle, scheduler and cache state."""
        checks = [
            CheckResult(
                name="started",
                passed=self._started and not self._disabled,
                message="Plugin active" if self._started else (self._disabled_reason or "Plugin not started"),
                severity="critical",
            )
        ]
        details: dict[str, Any] = {
            "request_count": self._request_count,
            "error_count": self._error_count,
            "uptime_seconds": time.monotonic() - self._started_at if self._started_at and self._started else 0,
        }

        if self._started and self._scheduler is not None:
            checks.append(CheckResult(
                name="scheduler_loop",
                passed=self._scheduler.is_running,
                message="Scheduler running" if self._scheduler.is_running else "Scheduler loop not running",
                severity="warning",
            ))
            failed = [s.id for s in self._scheduler.list() if s.status == ScheduleStatus.FAILED]
            checks.append(CheckResult(
                name="scheduled_reports",
                passed=not failed,
                message=f"{len(failed)} failed scheduled report(s)" if failed else "No failed schedules",
                severity="warning",
            ))
            details["failed_schedules"] = failed
        if self._started and self._reports is not None:
            cache = self._reports.cache.stats()
            checks.append(self._cache_check(cache))
            details["cache"] = cache

        report = PluginHealthReport.from_checks(checks, details=details)
        report.message = f"Analytics {report.status} ({self._request_count} requests)"
        return report

    def _cache_check(self, stats: dict[str, int]) -> CheckResult:
        message = f"{stats['entries']} cached result(s)"
        passed = True
        if not self.config.cache_enabled:
            message = "Result cache disabled"
        elif self.config.cache_ttl_seconds <= 0:
            passed = False
            message = "Result cache enabled with a zero TTL; results are never reused"
        elif (
            stats["misses"] >= _CACHE_MIN_MISSES
            and stats["evictions"] / stats["misses"] > _CACHE_MAX_EVICTION_RATIO
        ):
            passed = False
            message = (
                f"Result cache thrashing: {stats['evictions']} evictions for {stats['misses']} misses"
            )
        return CheckResult(name="result_cache", passed=passed, message=message, severity="warning")

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    @property
    def reports(self) -> ReportManager:
        self._require_active()
        return self._reports

    @property
    def dashboards(self) -> DashboardManager:
        self._require_active()
        return self._dashboards

    @property
    def scheduler(self) -> ReportScheduler:
        self._require_active()
        if self._scheduler is None:
            raise PluginStartupError("Scheduled reports are disabled")
        return self._scheduler

    def aggregate(
        self,
        pipeline: Any,
        context: SecurityContext | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> AggregationResult:
        """Run an ad-hoc pipeline against the host's record store."""
        self._require_active()
        return self._call(lambda: self._engine.execute(coerce_pipeline(pipeline), self._reports.store, context, cancel))

    def register_report(self, definition: ReportDefinition | dict[str, Any]) -> ReportDefinition:
        return self._call(lambda: self.reports.register(definition))

    def execute_report(
        self,
        report_id: str,
        params: dict[str, Any] | None = None,
        context: SecurityContext | None = None,
        **kwargs: Any,
    ) -> ReportResult:
        return self._call(lambda: self.reports.execute_report(report_id, params, context, **kwargs))

    def list_reports(self, options: ReportListOptions | None = None, **filters: Any) -> ReportPage:
        return self._call(lambda: self.reports.list_reports(options, **filters))

    def register_dashboard(self, definition: DashboardDefinition | dict[str, Any]) -> DashboardDefinition:
        return self._call(lambda: self.dashboards.register(definition))

    def resolve_dashboard(
        self,
        dashboard_id: str,
        context: SecurityContext | None = None,
        **kwargs: Any,
    ) -> DashboardLayout:
        return self._call(lambda: self.dashboards.resolve(dashboard_id, context, **kwargs))

    def schedule_report(self, scheduled: ScheduledReport | dict[str, Any]) -> ScheduledReport:
        return self._call(lambda: self.scheduler.add(scheduled))

    def _require_active(self) -> None:
        if self._disabled:
            raise PluginStartupError(f"Analytics plugin is disabled: {self._disabled_reason}")
        if not self._started:
            raise PluginStartupError("Analytics plugin has not been started")

    def _call(self, fn: Callable[[], T]) -> T:
        with self._stats_lock:
            self._request_count += 1
        try:
            return fn()
        except PivotalError:
            with self._stats_lock:
                self._error_count += 1
            raise
