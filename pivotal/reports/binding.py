"""Parameter resolution and ``$param.<name>`` placeholder binding."""

from __future__ import annotations

from typing import Any

from pivotal.aggregation.pipeline import AggregationPipeline
from pivotal.aggregation.predicates import AllOf, AnyOf, Condition, NotOf, Predicate
from pivotal.aggregation.stages import MatchStage
from pivotal.aggregation.values import is_placeholder, placeholder_name
from pivotal.errors import ValidationError
from pivotal.reports.models import ReportDefinition


def resolve_parameters(definition: ReportDefinition, supplied: dict[str, Any] | None) -> dict[str, Any]:
    """Validate *supplied* against the declared parameters.

    Returns the resolved mapping: every declared parameter is present,
    optional ones falling back to their default (or None).

    Raises
    ------
    ValidationError
        Missing required parameter, type mismatch or undeclared name.
    """
    supplied = dict(supplied or {})
    declared = {p.name for p in definition.parameters}
    unknown = sorted(set(supplied) - declared)
    if unknown:
        raise ValidationError(
            f"Report {definition.id!r} does not declare parameter(s): {', '.join(unknown)}"
        )

    resolved: dict[str, Any] = {}
    for param in definition.parameters:
        if param.name in supplied and supplied[param.name] is not None:
            resolved[param.name] = param.coerce(supplied[param.name])
        elif param.required:
            raise ValidationError(f"Missing required parameter {param.name!r}")
        else:
            resolved[param.name] = param.coerce(param.default)
    return resolved


def pipeline_placeholders(pipeline: AggregationPipeline) -> set[str]:
    """Return the names of every placeholder used in match stages."""
    names: set[str] = set()
    for stage in pipeline.stages:
        if isinstance(stage, MatchStage):
            _collect(stage.where, names)
    return names


def _collect(predicate: Predicate, names: set[str]) -> None:
    if isinstance(predicate, Condition):
        for value in _flatten(predicate.value):
            if is_placeholder(value):
                names.add(placeholder_name(value))
    elif isinstance(predicate, (AllOf, AnyOf)):
        for child in predicate.conditions:
            _collect(child, names)
    elif isinstance(predicate, NotOf):
        _collect(predicate.condition, names)


def _flatten(value: Any):
    if isinstance(value, (list, tuple)):
        for item in value:
            yield from _flatten(item)
    else:
        yield value


def bind_pipeline(pipeline: AggregationPipeline, values: dict[str, Any]) -> AggregationPipeline:
    """Return a copy of *pipeline* with placeholders replaced by *values*."""
    stages = [
        MatchStage(where=_bind(stage.where, values)) if isinstance(stage, MatchStage) else stage
        for stage in pipeline.stages
    ]
    return AggregationPipeline(object_name=pipeline.object_name, stages=stages)


def _bind(predicate: Predicate, values: dict[str, Any]) -> Predicate:
    if isinstance(predicate, Condition):
        return predicate.model_copy(update={"value": _bind_value(predicate.value, values)})
    if isinstance(predicate, AllOf):
        return AllOf(conditions=[_bind(c, values) for c in predicate.conditions])
    if isinstance(predicate, AnyOf):
        return AnyOf(conditions=[_bind(c, values) for c in predicate.conditions])
    if isinstance(predicate, NotOf):
        return NotOf(condition=_bind(predicate.condition, values))
    return predicate


def _bind_value(value: Any, values: dict[str, Any]) -> Any:
    if is_placeholder(value):
        name = placeholder_name(value)
        if name not in values:
            raise ValidationError(f"Unbound parameter placeholder {value!r}")
        return values[name]
    if isinstance(value, list):
        return [_bind_value(v, values) for v in value]
    if isinstance(value, tuple):
        return tuple(_bind_value(v, values) for v in value)
    return value
