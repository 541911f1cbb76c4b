"""Aggregation pipelines — typed stages and the engine that runs them."""

from pivotal.aggregation.engine import AggregationEngine
from pivotal.aggregation.expressions import Constant, FieldRef, Operation, parse_expression
from pivotal.aggregation.pipeline import (
    AggregationPipeline,
    AggregationResult,
    ExecutionStats,
    coerce_pipeline,
    parse_pipeline,
)
from pivotal.aggregation.predicates import AllOf, AnyOf, Condition, NotOf, parse_predicate
from pivotal.aggregation.stages import (
    AggregationStage,
    ComputeStage,
    CountStage,
    GroupAggregate,
    GroupStage,
    LimitStage,
    LookupStage,
    MatchStage,
    ProjectField,
    ProjectStage,
    SkipStage,
    SortKey,
    SortStage,
    UnwindStage,
    parse_stage,
)

__all__ = [
    "AggregationEngine",
    "AggregationPipeline",
    "AggregationResult",
    "AggregationStage",
    "AllOf",
    "AnyOf",
    "ComputeStage",
    "Condition",
    "Constant",
    "CountStage",
    "ExecutionStats",
    "FieldRef",
    "GroupAggregate",
    "GroupStage",
    "LimitStage",
    "LookupStage",
    "MatchStage",
    "NotOf",
    "Operation",
    "ProjectField",
    "ProjectStage",
    "SkipStage",
    "SortKey",
    "SortStage",
    "UnwindStage",
    "coerce_pipeline",
    "parse_expression",
    "parse_pipeline",
    "parse_predicate",
    "parse_stage",
]
