"""Pydantic models for report definitions and results."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from pivotal.aggregation.pipeline import AggregationPipeline, ExecutionStats, coerce_pipeline
from pivotal.aggregation.values import is_number
from pivotal.errors import ValidationError


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class ReportFormat(str, Enum):
    """Output formats a report can be rendered in."""

    JSON = "json"
    CSV = "csv"
    HTML = "html"
    MARKDOWN = "markdown"


PARAMETER_TYPES = ("string", "number", "integer", "boolean", "date", "list")


class ReportParameter(BaseModel):
    """A declared, typed report input."""

    name: str
    type: str = "string"
    """One of ``PARAMETER_TYPES``."""

    required: bool = False
    default: Any = None
    label: str = ""

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in PARAMETER_TYPES:
            raise ValueError(f"unsupported parameter type {value!r}")
        return value

    def coerce(self, value: Any) -> Any:
        """Check *value* against the declared type.

        Integers are accepted for ``number`` parameters, ISO strings and
        ``date``/``datetime`` objects for ``date`` parameters, tuples for
        ``list``.  Nothing else is converted.

        Raises
        ------
        ValidationError
            On a type mismatch.
        """
        if value is None:
            return None
        ok = False
        if self.type == "string":
            ok = isinstance(value, str)
        elif self.type == "number":
            ok = is_number(value)
        elif self.type == "integer":
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif self.type == "boolean":
            ok = isinstance(value, bool)
        elif self.type == "list":
            if isinstance(value, tuple):
                value = list(value)
            ok = isinstance(value, list)
        elif self.type == "date":
            if isinstance(value, (date, datetime)):
                ok = True
            elif isinstance(value, str):
                try:
                    datetime.fromisoformat(value)
                    ok = True
                except ValueError:
                    ok = False
        if not ok:
            raise ValidationError(
                f"Parameter {self.name!r} expects {self.type}, got {type(value).__name__} {value!r}"
            )
        return value


class ReportDefinition(BaseModel):
    """A named, parameterized pipeline with an output format."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    format: ReportFormat = ReportFormat.JSON
    parameters: list[ReportParameter] = Field(default_factory=list)
    pipeline: AggregationPipeline
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: Optional[datetime] = None

    @field_validator("pipeline", mode="before")
    @classmethod
    def _parse_pipeline(cls, value: Any) -> Any:
        return coerce_pipeline(value)

    @property
    def object_name(self) -> str:
        return self.pipeline.object_name


class ReportResult(BaseModel):
    """Output of one report execution.

    Cache hits return the stored instance unchanged.
    """

    report_id: str
    report_name: str
    format: ReportFormat
    rows: list[dict[str, Any]] = Field(default_factory=list)
    content: str = ""
    """Rendered payload in ``format``."""

    row_count: int = 0
    parameters: dict[str, Any] = Field(default_factory=dict)
    stats: ExecutionStats = Field(default_factory=ExecutionStats)
    generated_at: datetime = Field(default_factory=_utc_now)
    cache_key: str = ""


class ReportListOptions(BaseModel):
    """Filters and paging for :meth:`ReportManager.list_reports`."""

    object_name: Optional[str] = None
    format: Optional[ReportFormat] = None
    category: Optional[str] = None
    tag: Optional[str] = None
    created_by: Optional[str] = None
    search: Optional[str] = None
    """Case-insensitive substring of the report name."""

    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=500)


class ReportPage(BaseModel):
    items: list[ReportDefinition] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 50
