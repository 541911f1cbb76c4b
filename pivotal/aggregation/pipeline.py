"""AggregationPipeline and AggregationResult models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from pivotal.aggregation.stages import AggregationStage, parse_stage
from pivotal.errors import ValidationError


class AggregationPipeline(BaseModel):
    """Ordered stages applied to the records of ``object_name``."""

    object_name: str
    stages: list[AggregationStage] = Field(default_factory=list)


class ExecutionStats(BaseModel):
    duration_ms: float = 0.0
    stages_applied: int = 0
    records_processed: int = 0


class AggregationResult(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    stats: ExecutionStats = Field(default_factory=ExecutionStats)


def parse_pipeline(object_name: str, stages: list[Any]) -> AggregationPipeline:
    """Build a pipeline from typed or compact stage dicts."""
    if not object_name or not isinstance(object_name, str):
        raise ValidationError("Pipeline must specify a valid object name")
    if not isinstance(stages, list):
        raise ValidationError("Pipeline stages must be a list")
    return AggregationPipeline(
        object_name=object_name,
        stages=[parse_stage(s) for s in stages],
    )


def coerce_pipeline(value: Any) -> AggregationPipeline:
    """Accept a pipeline model or a ``{"object_name", "stages"}`` dict."""
    if isinstance(value, AggregationPipeline):
        return value
    if isinstance(value, dict):
        object_name = value.get("object_name", value.get("objectName", value.get("object")))
        return parse_pipeline(object_name, value.get("stages", []))
    raise ValidationError(f"Cannot build a pipeline from {type(value).__name__}")
