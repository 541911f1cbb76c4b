"""Report definitions, execution, caching and rendering."""

from pivotal.reports.cache import ResultCache, cache_key
from pivotal.reports.formatter import ReportFormatter
from pivotal.reports.manager import ReportManager
from pivotal.reports.models import (
    ReportDefinition,
    ReportFormat,
    ReportListOptions,
    ReportPage,
    ReportParameter,
    ReportResult,
)

__all__ = [
    "ReportDefinition",
    "ReportFormat",
    "ReportFormatter",
    "ReportListOptions",
    "ReportManager",
    "ReportPage",
    "ReportParameter",
    "ReportResult",
    "ResultCache",
    "cache_key",
]
