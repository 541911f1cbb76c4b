"""Tests for the analytics plugin lifecycle, manifests and health."""

from __future__ import annotations

import threading

import pytest

from pivotal import __version__
from pivotal.context import SecurityContext
from pivotal.errors import PluginStartupError, ValidationError
from pivotal.plugin import (
    AnalyticsPlugin,
    CheckResult,
    PluginHealthReport,
    PluginHost,
)
from pivotal.plugin.manifests import CORE_PERMISSIONS, SCHEDULE_PERMISSIONS
from pivotal.scheduling import LogDeliverySink, WebhookDeliverySink
from pivotal.settings import AnalyticsConfig
from pivotal.store import InMemoryRecordStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


ACCOUNTS = [
    {"id": 1, "tier": "gold", "tenant_id": "t1"},
    {"id": 2, "tier": "silver", "tenant_id": "t1"},
    {"id": 3, "tier": "gold", "tenant_id": "t2"},
]


def _host(plugin: AnalyticsPlugin, **overrides) -> PluginHost:
    kwargs = {
        "granted_permissions": plugin.security().permissions,
        "services": {
            "data": InMemoryRecordStore({"account": ACCOUNTS}),
            "notification": LogDeliverySink(),
        },
    }
    kwargs.update(overrides)
    return PluginHost(**kwargs)


@pytest.fixture
def plugin():
    plugin = AnalyticsPlugin(AnalyticsConfig(scheduler_enabled=False))
    yield plugin
    plugin.stop()


@pytest.fixture
def started(plugin: AnalyticsPlugin) -> AnalyticsPlugin:
    result = plugin.start(_host(plugin))
    assert result.success, result.message
    return plugin


# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------


class TestManifests:
    def test_capabilities_without_scheduler(self, plugin: AnalyticsPlugin) -> None:
        manifest = plugin.capabilities()
        assert manifest.id == "pivotal-analytics"
        assert manifest.version == __version__
        assert "analytics" in manifest.provides
        assert "analytics.scheduler" not in manifest.provides
        assert manifest.consumes == ["data"]

    def test_capabilities_with_scheduler(self) -> None:
        manifest = AnalyticsPlugin().capabilities()
        assert "analytics.scheduler" in manifest.provides
        assert manifest.consumes == ["data", "notification"]

    def test_webhook_url_stands_in_for_notification(self) -> None:
        plugin = AnalyticsPlugin(AnalyticsConfig(webhook_url="https://hooks.example.com/reports"))
        assert plugin.capabilities().consumes == ["data"]

    def test_permissions(self, plugin: AnalyticsPlugin) -> None:
        assert plugin.security().permissions == list(CORE_PERMISSIONS)
        assert plugin.security().data_access == ["read"]
        scheduled = AnalyticsPlugin().security().permissions
        assert scheduled == list(CORE_PERMISSIONS) + list(SCHEDULE_PERMISSIONS)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_start_registers_service(self, plugin: AnalyticsPlugin) -> None:
        host = _host(plugin)
        result = plugin.start(host)
        assert result.success
        assert host.get_service("analytics") is plugin
        assert host.has_capability("analytics")

    def test_start_twice(self, started: AnalyticsPlugin) -> None:
        assert started.start(_host(started)).success

    def test_missing_capability(self, plugin: AnalyticsPlugin) -> None:
        host = PluginHost(granted_permissions=plugin.security().permissions)
        result = plugin.start(host)
        assert not result.success
        assert result.missing_capabilities == ["data"]
        with pytest.raises(PluginStartupError):
            plugin.register_report({"name": "x", "pipeline": {"object_name": "account", "stages": [{"count": {}}]}})

    def test_missing_permission(self, plugin: AnalyticsPlugin) -> None:
        granted = [p for p in plugin.security().permissions if p != "analytics.reports.execute"]
        result = plugin.start(_host(plugin, granted_permissions=granted))
        assert not result.success
        assert result.missing_permissions == ["analytics.reports.execute"]
        with pytest.raises(PluginStartupError):
            plugin.aggregate({"object_name": "account", "stages": [{"count": {}}]})

    def test_wrong_data_service(self, plugin: AnalyticsPlugin) -> None:
        result = plugin.start(_host(plugin, services={"data": object()}))
        assert not result.success
        assert "RecordStore" in result.message

    def test_scheduler_needs_notification(self) -> None:
        plugin = AnalyticsPlugin()
        host = PluginHost(
            granted_permissions=plugin.security().permissions,
            services={"data": InMemoryRecordStore()},
        )
        result = plugin.start(host)
        assert not result.success
        assert result.missing_capabilities == ["notification"]

    def test_webhook_sink_from_config(self) -> None:
        plugin = AnalyticsPlugin(AnalyticsConfig(
            scheduler_tick_seconds=3600,
            webhook_url="https://hooks.example.com/reports",
        ))
        host = PluginHost(
            granted_permissions=plugin.security().permissions,
            services={"data": InMemoryRecordStore({"account": ACCOUNTS})},
        )
        try:
            result = plugin.start(host)
            assert result.success, result.message
            assert isinstance(plugin.scheduler.sink, WebhookDeliverySink)
            assert plugin.scheduler.sink.is_available()
        finally:
            plugin.stop()

    def test_notification_service_preferred_over_webhook(self) -> None:
        plugin = AnalyticsPlugin(AnalyticsConfig(
            scheduler_tick_seconds=3600,
            webhook_url="https://hooks.example.com/reports",
        ))
        host = _host(plugin)
        try:
            assert plugin.start(host).success
            assert plugin.scheduler.sink is host.get_service("notification")
        finally:
            plugin.stop()

    def test_service_name_taken(self, plugin: AnalyticsPlugin) -> None:
        host = _host(plugin)
        other = object()
        host.register_service("analytics", other)
        result = plugin.start(host)
        assert not result.success
        assert host.get_service("analytics") is other

    def test_not_started(self, plugin: AnalyticsPlugin) -> None:
        with pytest.raises(PluginStartupError):
            plugin.reports

    def test_stop_withdraws_service(self, started: AnalyticsPlugin) -> None:
        host = started._host
        started.stop()
        assert host.get_service("analytics") is None
        with pytest.raises(PluginStartupError):
            started.list_reports()

    def test_scheduler_disabled(self, started: AnalyticsPlugin) -> None:
        with pytest.raises(PluginStartupError):
            started.schedule_report({"report_id": "r", "schedule": "@daily", "recipients": ["a"]})

    def test_with_scheduler(self) -> None:
        plugin = AnalyticsPlugin(AnalyticsConfig(scheduler_tick_seconds=3600))
        try:
            assert plugin.start(_host(plugin)).success
            assert plugin.scheduler.is_running
            plugin.register_report({
                "id": "tiers",
                "name": "Tiers",
                "pipeline": {"object_name": "account", "stages": [{"group": {"by": "tier", "count": True}}]},
            })
            entry = plugin.schedule_report({"report_id": "tiers", "schedule": "@daily", "recipients": ["ops"]})
            assert plugin.scheduler.get(entry.id).report_id == "tiers"
        finally:
            plugin.stop()
        assert not plugin._scheduler.is_running


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


class TestEntryPoints:
    def test_aggregate(self, started: AnalyticsPlugin) -> None:
        result = started.aggregate(
            {"object_name": "account", "stages": [{"group": {"by": "tier", "count": True}}]},
            SecurityContext(tenant_id="t1"),
        )
        assert result.rows == [{"tier": "gold", "count": 1}, {"tier": "silver", "count": 1}]

    def test_reports_and_dashboards(self, started: AnalyticsPlugin) -> None:
        started.register_report({
            "id": "tiers",
            "name": "Tiers",
            "pipeline": {"object_name": "account", "stages": [{"group": {"by": "tier", "count": True}}]},
        })
        assert started.execute_report("tiers").row_count == 2
        assert started.list_reports().total == 1

        started.register_dashboard({
            "id": "home",
            "name": "Home",
            "widgets": [{"id": "t", "report_id": "tiers", "size": {"width": 6, "height": 2}}],
        })
        layout = started.resolve_dashboard("home", SecurityContext(tenant_id="t2"))
        assert layout.widgets[0].outcome.result.rows == [{"tier": "gold", "count": 1}]

    def test_request_and_error_counts(self, started: AnalyticsPlugin) -> None:
        started.list_reports()
        with pytest.raises(ValidationError):
            started.execute_report("missing")
        details = started.health().details
        assert details["request_count"] == 2
        assert details["error_count"] == 1

    def test_counts_from_concurrent_calls(self, started: AnalyticsPlugin) -> None:
        def call_many() -> None:
            for _ in range(200):
                started.list_reports()

        threads = [threading.Thread(target=call_many) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert started.health().details["request_count"] == 1600


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    def test_healthy(self, started: AnalyticsPlugin) -> None:
        report = started.health()
        assert report.status == "healthy"
        assert "cache" in report.details

    def test_unhealthy_before_start(self, plugin: AnalyticsPlugin) -> None:
        report = plugin.health()
        assert report.status == "unhealthy"
        assert report.details["uptime_seconds"] == 0

    def test_unhealthy_after_failed_start(self, plugin: AnalyticsPlugin) -> None:
        plugin.start(PluginHost())
        report = plugin.health()
        assert report.status == "unhealthy"
        assert "missing capabilities" in report.checks[0].message

    def test_degraded_when_scheduler_stopped(self) -> None:
        plugin = AnalyticsPlugin(AnalyticsConfig(scheduler_tick_seconds=3600))
        try:
            plugin.start(_host(plugin))
            plugin.scheduler.stop()
            report = plugin.health()
            assert report.status == "degraded"
            assert report.details["failed_schedules"] == []
        finally:
            plugin.stop()

    def test_degraded_when_cache_never_reuses(self) -> None:
        plugin = AnalyticsPlugin(AnalyticsConfig(scheduler_enabled=False, cache_ttl_seconds=0))
        try:
            assert plugin.start(_host(plugin)).success
            report = plugin.health()
            cache_check = next(c for c in report.checks if c.name == "result_cache")
            assert not cache_check.passed
            assert cache_check.severity == "warning"
            assert report.status == "degraded"
        finally:
            plugin.stop()

    def test_degraded_when_cache_thrashes(self) -> None:
        plugin = AnalyticsPlugin(AnalyticsConfig(scheduler_enabled=False, cache_max_entries=1))
        try:
            assert plugin.start(_host(plugin)).success
            plugin.register_report({
                "id": "from-id",
                "name": "Accounts from id",
                "parameters": [{"name": "minId", "type": "integer", "required": True}],
                "pipeline": {"object_name": "account", "stages": [{"match": {"id": {"$gte": "$param.minId"}}}]},
            })
            assert plugin.health().status == "healthy"
            for min_id in range(25):
                plugin.execute_report("from-id", {"minId": min_id})
            report = plugin.health()
            assert report.status == "degraded"
            assert "thrashing" in next(c for c in report.checks if c.name == "result_cache").message
        finally:
            plugin.stop()

    def test_from_checks(self) -> None:
        ok = CheckResult(name="a", passed=True, severity="critical")
        warn = CheckResult(name="b", passed=False, severity="warning")
        crit = CheckResult(name="c", passed=False, severity="critical")
        info = CheckResult(name="d", passed=False, severity="info")
        assert PluginHealthReport.from_checks([ok, info]).status == "healthy"
        assert PluginHealthReport.from_checks([ok, warn]).status == "degraded"
        assert PluginHealthReport.from_checks([warn, crit]).status == "unhealthy"


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------


class TestPluginHost:
    def test_services_count_as_capabilities(self) -> None:
        host = PluginHost(capabilities=["files"], services={"data": InMemoryRecordStore()})
        assert host.has_capability("files")
        assert host.has_capability("data")
        assert host.list_services() == ["data"]

    def test_register_conflict(self) -> None:
        host = PluginHost()
        service = object()
        host.register_service("x", service)
        host.register_service("x", service)
        with pytest.raises(ValidationError):
            host.register_service("x", object())
        host.unregister_service("x")
        assert not host.has_capability("x")
