"""Host integration — lifecycle façade, host boundary and manifests."""

from pivotal.plugin.host import PluginHost
from pivotal.plugin.manifests import (
    CheckResult,
    PluginCapabilityManifest,
    PluginHealthReport,
    PluginSecurityManifest,
    PluginStartupResult,
)
from pivotal.plugin.plugin import AnalyticsPlugin

__all__ = [
    "AnalyticsPlugin",
    "CheckResult",
    "PluginCapabilityManifest",
    "PluginHealthReport",
    "PluginHost",
    "PluginSecurityManifest",
    "PluginStartupResult",
]
