"""Plugin manifests, startup results and health reports."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

CORE_PERMISSIONS = (
    "analytics.aggregate",
    "analytics.reports.create",
    "analytics.reports.read",
    "analytics.reports.execute",
    "analytics.reports.delete",
    "analytics.dashboards.create",
    "analytics.dashboards.read",
    "analytics.dashboards.execute",
    "analytics.dashboards.delete",
)

SCHEDULE_PERMISSIONS = (
    "analytics.schedules.create",
    "analytics.schedules.read",
    "analytics.schedules.delete",
)


class CheckResult(BaseModel):
    """Result of a single health check."""

    name: str = ""
    passed: bool = True
    message: str = ""
    severity: str = "info"  # info, warning, critical


class PluginHealthReport(BaseModel):
    status: str = "healthy"  # healthy, degraded, unhealthy
    message: str = ""
    checks: list[CheckResult] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_checks(cls, checks: list[CheckResult], **kwargs: Any) -> PluginHealthReport:
        """Derive the overall status from the worst failing check."""
        critical_fail = any(c.severity == "critical" and not c.passed for c in checks)
        warning_fail = any(c.severity == "warning" and not c.passed for c in checks)

        if critical_fail:
            status = "unhealthy"
        elif warning_fail:
            status = "degraded"
        else:
            status = "healthy"
        return cls(status=status, checks=checks, **kwargs)


class PluginCapabilityManifest(BaseModel):
    id: str
    version: str
    provides: list[str] = Field(default_factory=list)
    consumes: list[str] = Field(default_factory=list)
    """Host capabilities the plugin needs to start."""


class PluginSecurityManifest(BaseModel):
    permissions: list[str] = Field(default_factory=list)
    """Permissions the host must grant before the plugin starts."""

    data_access: list[str] = Field(default_factory=lambda: ["read"])


class PluginStartupResult(BaseModel):
    success: bool
    message: str = ""
    missing_capabilities: list[str] = Field(default_factory=list)
    missing_permissions: list[str] = Field(default_factory=list)
