"""Pydantic models for dashboards, widgets and resolved layouts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from pivotal.aggregation.pipeline import AggregationPipeline, AggregationResult, coerce_pipeline


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


WIDGET_TYPES = ("chart", "table", "metric", "list", "text")


class WidgetSize(BaseModel):
    width: int = 1
    height: int = 1


class WidgetPosition(BaseModel):
    x: int = 0
    y: int = 0


class DashboardWidget(BaseModel):
    """A grid cell backed by either a saved report or an inline pipeline."""

    id: str
    type: str = "table"
    """Type: 'chart', 'table', 'metric', 'list', 'text'."""

    title: str = ""
    size: WidgetSize = Field(default_factory=WidgetSize)
    position: WidgetPosition = Field(default_factory=WidgetPosition)
    report_id: Optional[str] = None
    pipeline: Optional[AggregationPipeline] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    refresh_interval: Optional[int] = None
    """Seconds between client refreshes; informational only."""

    @field_validator("pipeline", mode="before")
    @classmethod
    def _parse_pipeline(cls, value: Any) -> Any:
        return None if value is None else coerce_pipeline(value)

    def overlaps(self, other: DashboardWidget) -> bool:
        """True if the two widgets share at least one grid cell."""
        return (
            self.position.x < other.position.x + other.size.width
            and other.position.x < self.position.x + self.size.width
            and self.position.y < other.position.y + other.size.height
            and other.position.y < self.position.y + self.size.height
        )


class GridLayout(BaseModel):
    columns: int = 12
    rows: Optional[int] = None
    """Optional row bound; unbounded when None."""

    row_height: int = 80


class DashboardDefinition(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    widgets: list[DashboardWidget] = Field(default_factory=list)
    layout: GridLayout = Field(default_factory=GridLayout)
    owner: Optional[str] = None
    shared: bool = False
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: Optional[datetime] = None


class WidgetSuccess(BaseModel):
    status: Literal["ok"] = "ok"
    result: AggregationResult
    content: str = ""
    """Rendered report payload when the widget is backed by a report."""


class WidgetFailure(BaseModel):
    status: Literal["error"] = "error"
    error_type: str
    message: str


WidgetOutcome = Annotated[Union[WidgetSuccess, WidgetFailure], Field(discriminator="status")]


class PositionedWidget(BaseModel):
    """A widget definition paired with its resolution outcome."""

    id: str
    type: str
    title: str = ""
    size: WidgetSize
    position: WidgetPosition
    outcome: WidgetOutcome


class DashboardLayout(BaseModel):
    """Payload returned by :meth:`DashboardManager.resolve`."""

    dashboard_id: str
    name: str
    layout: GridLayout
    widgets: list[PositionedWidget] = Field(default_factory=list)
    """Finished widgets ordered by (y, x)."""

    cancelled: bool = False
    discarded: list[str] = Field(default_factory=list)
    """Ids of widgets dropped because the call was cancelled."""

    resolved_at: datetime = Field(default_factory=_utc_now)

    @property
    def failures(self) -> list[PositionedWidget]:
        return [w for w in self.widgets if isinstance(w.outcome, WidgetFailure)]
