"""Dashboards — widget grids resolved concurrently into layout payloads."""

from pivotal.dashboards.layout import validate_layout
from pivotal.dashboards.manager import DashboardManager
from pivotal.dashboards.models import (
    DashboardDefinition,
    DashboardLayout,
    DashboardWidget,
    GridLayout,
    PositionedWidget,
    WidgetFailure,
    WidgetPosition,
    WidgetSize,
    WidgetSuccess,
)

__all__ = [
    "DashboardDefinition",
    "DashboardLayout",
    "DashboardManager",
    "DashboardWidget",
    "GridLayout",
    "PositionedWidget",
    "WidgetFailure",
    "WidgetPosition",
    "WidgetSize",
    "WidgetSuccess",
    "validate_layout",
]
