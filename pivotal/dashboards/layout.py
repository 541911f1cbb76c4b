"""Grid validation for dashboard definitions."""

from __future__ import annotations

from pivotal.dashboards.models import DashboardDefinition, DashboardWidget, WIDGET_TYPES
from pivotal.errors import ValidationError


def validate_widget(widget: DashboardWidget, columns: int, rows: int | None) -> None:
    """Check one widget's source, type and geometry against the grid."""
    if (widget.report_id is None) == (widget.pipeline is None):
        raise ValidationError(
            f"Widget {widget.id!r} must have exactly one of report_id or pipeline"
        )
    if widget.type not in WIDGET_TYPES:
        raise ValidationError(f"Widget {widget.id!r} has unknown type {widget.type!r}")
    if widget.size.width < 1 or widget.size.height < 1:
        raise ValidationError(f"Widget {widget.id!r} must be at least 1x1")
    if widget.position.x < 0 or widget.position.y < 0:
        raise ValidationError(f"Widget {widget.id!r} has a negative position")
    if widget.position.x + widget.size.width > columns:
        raise ValidationError(
            f"Widget {widget.id!r} exceeds the grid width of {columns} columns"
        )
    if rows is not None and widget.position.y + widget.size.height > rows:
        raise ValidationError(f"Widget {widget.id!r} exceeds the grid height of {rows} rows")
    if widget.refresh_interval is not None and widget.refresh_interval <= 0:
        raise ValidationError(f"Widget {widget.id!r} refresh_interval must be positive")


def validate_layout(definition: DashboardDefinition) -> None:
    """Validate ids, geometry and overlap of every widget.

    Raises
    ------
    ValidationError
        On the first violation found.
    """
    grid = definition.layout
    if grid.columns < 1:
        raise ValidationError("Grid must have at least one column")
    if grid.rows is not None and grid.rows < 1:
        raise ValidationError("Grid row bound must be positive")

    seen: set[str] = set()
    placed: list[DashboardWidget] = []
    for widget in definition.widgets:
        if widget.id in seen:
            raise ValidationError(f"Duplicate widget id {widget.id!r}")
        seen.add(widget.id)
        validate_widget(widget, grid.columns, grid.rows)

        for other in placed:
            if other.overlaps(widget):
                raise ValidationError(f"Widgets {other.id!r} and {widget.id!r} overlap")
        placed.append(widget)
