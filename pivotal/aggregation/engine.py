"""AggregationEngine — validates and executes stage pipelines.

Usage::

    from pivotal.aggregation import AggregationEngine, parse_pipeline

    engine = AggregationEngine()
    pipeline = parse_pipeline("task", [
        {"match": {"status": "open"}},
        {"group": {"by": "owner", "count": True}},
    ])
    result = engine.run(pipeline, rows)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from pivotal.aggregation import expressions, predicates
from pivotal.aggregation.pipeline import AggregationPipeline, AggregationResult, ExecutionStats
from pivotal.aggregation.predicates import AllOf, Condition
from pivotal.aggregation.stages import (
    AGGREGATE_OPS,
    AggregationStage,
    ComputeStage,
    CountStage,
    GroupStage,
    LimitStage,
    LookupStage,
    MatchStage,
    ProjectStage,
    SkipStage,
    SortStage,
    UnwindStage,
)
from pivotal.aggregation.values import freeze, is_number, root_field, value_at
from pivotal.cancellation import CancellationToken
from pivotal.context import SecurityContext, scope_conditions
from pivotal.errors import ExecutionError, PivotalError, SchemaError, ValidationError
from pivotal.settings import AnalyticsConfig
from pivotal.store import NUMERIC_TYPES, ObjectSchema, RecordStore

logger = logging.getLogger(__name__)

Row = dict[str, Any]
RelatedFetcher = Callable[[str], "list[Row] | None"]

# Field types that may hide arbitrary nested paths.
_OPAQUE_TYPES = ("object", "list", "any")


class AggregationEngine:
    """Execute aggregation pipelines over in-memory record streams.

    Parameters
    ----------
    config:
        Engine limits and row-scoping field names.  Defaults to
        :class:`AnalyticsConfig` defaults.
    """

    def __init__(self, config: AnalyticsConfig | None = None) -> None:
        self.config = config or AnalyticsConfig()

    # ── Validation ──────────────────────────────────────────────────────────

    def validate(
        self,
        pipeline: AggregationPipeline,
        schema: ObjectSchema | None = None,
        schemas: dict[str, ObjectSchema] | None = None,
    ) -> None:
        """Validate the whole pipeline before anything executes.

        Walks the stages tracking which fields each one produces, so a
        reference to a field dropped by an earlier ``group`` or
        ``project`` is rejected up front.

        Raises
        ------
        ValidationError
            Structural problems, unknown operators or unknown fields.
        SchemaError
            Lookups against unknown objects or fields.
        """
        if not pipeline.object_name:
            raise ValidationError("Pipeline must specify a valid object name")
        if not pipeline.stages:
            raise ValidationError("Pipeline must have at least one stage")
        if len(pipeline.stages) > self.config.max_pipeline_stages:
            raise ValidationError(
                f"Pipeline exceeds maximum of {self.config.max_pipeline_stages} stages"
            )

        fields: dict[str, str] | None = dict(schema.fields) if schema is not None else None
        for index, stage in enumerate(pipeline.stages):
            try:
                fields = self._validate_stage(stage, fields, schemas)
            except ValidationError as exc:
                raise type(exc)(f"Stage {index} ({stage.kind}): {exc}") from exc

    def _validate_stage(
        self,
        stage: AggregationStage,
        fields: dict[str, str] | None,
        schemas: dict[str, ObjectSchema] | None,
    ) -> dict[str, str] | None:
        if isinstance(stage, MatchStage):
            predicates.validate_predicate(stage.where)
            for cond in predicates.iter_conditions(stage.where):
                _require_field(fields, cond.field)
            return fields

        if isinstance(stage, GroupStage):
            out: dict[str, str] = {}
            for key in stage.by:
                _require_field(fields, key)
                out[key] = _field_type(fields, key)
            for agg in stage.aggregates:
                if agg.op not in AGGREGATE_OPS:
                    raise ValidationError(f"Unsupported aggregate: {agg.op!r}")
                if agg.op != "count":
                    if not agg.field:
                        raise ValidationError(f"Aggregate {agg.op!r} needs a field")
                if agg.field:
                    _require_field(fields, agg.field)
                if agg.op in ("sum", "avg") and agg.field:
                    ftype = _field_type(fields, agg.field)
                    if ftype not in NUMERIC_TYPES and ftype != "any":
                        raise ValidationError(
                            f"Aggregate {agg.op!r} needs a numeric field, "
                            f"{agg.field!r} is {ftype}"
                        )
                if agg.alias in out:
                    raise ValidationError(f"Duplicate group output field {agg.alias!r}")
                if agg.op in ("sum", "avg", "count"):
                    out[agg.alias] = "number"
                else:
                    out[agg.alias] = _field_type(fields, agg.field or "")
            return out

        if isinstance(stage, SortStage):
            for key in stage.keys:
                _require_field(fields, key.field)
            return fields

        if isinstance(stage, ProjectStage):
            if stage.columns:
                out = {}
                for col in stage.columns:
                    _require_field(fields, col.source)
                    out[col.output] = _field_type(fields, col.source)
                return out
            for name in stage.exclude:
                _require_field(fields, name)
            if fields is None:
                return None
            return {k: v for k, v in fields.items() if k not in stage.exclude}

        if isinstance(stage, (LimitStage, SkipStage)):
            return fields

        if isinstance(stage, LookupStage):
            _require_field(fields, stage.local_field)
            if schemas is not None:
                foreign = schemas.get(stage.from_object)
                if foreign is None:
                    raise SchemaError(f"Unknown lookup object {stage.from_object!r}")
                if foreign.fields and not foreign.has_field(stage.foreign_field):
                    raise SchemaError(
                        f"Object {stage.from_object!r} has no field {stage.foreign_field!r}"
                    )
            if fields is None:
                return None
            return {**fields, stage.as_field: "list" if stage.many else "object"}

        if isinstance(stage, ComputeStage):
            expressions.validate_expression(stage.expression)
            for ref in expressions.iter_field_refs(stage.expression):
                _require_field(fields, ref)
            if fields is None:
                return None
            return {**fields, stage.field: expressions.result_type(stage.expression)}

        if isinstance(stage, UnwindStage):
            _require_field(fields, stage.field)
            if fields is None:
                return None
            return {**fields, stage.field: "any"}

        if isinstance(stage, CountStage):
            return {stage.as_field: "integer"}

        raise ValidationError(f"Unsupported stage kind: {getattr(stage, 'kind', stage)!r}")

    # ── Execution ───────────────────────────────────────────────────────────

    def run(
        self,
        pipeline: AggregationPipeline,
        source_rows: list[Row],
        *,
        schema: ObjectSchema | None = None,
        related: RelatedFetcher | None = None,
        related_schema: Callable[[str], ObjectSchema | None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> AggregationResult:
        """Run *pipeline* over *source_rows*.

        Parameters
        ----------
        schema:
            Source object schema.  Inferred from the rows when omitted.
        related:
            Fetches records of another object for lookup stages; returns
            None for unknown objects.
        related_schema:
            Schema provider for lookup targets.  Inferred from the fetched
            records when omitted.
        cancel:
            Checked before every stage; raises :class:`TimeoutError`.

        Raises
        ------
        ValidationError
            Raised before any stage runs.
        ExecutionError
            Runtime fault; no partial result is returned.
        """
        start = time.perf_counter()
        rows = [dict(r) for r in source_rows]
        if schema is None and rows:
            schema = ObjectSchema.infer(pipeline.object_name, rows)

        related_rows, schemas = self._prefetch_lookups(pipeline, related, related_schema)
        self.validate(pipeline, schema, schemas)

        stages_applied = 0
        for index, stage in enumerate(pipeline.stages):
            if cancel is not None:
                cancel.raise_if_cancelled(f"stage {index} ({stage.kind})")
            try:
                rows = self._apply(stage, rows, related_rows)
            except PivotalError:
                raise
            except (TypeError, ValueError, ArithmeticError) as exc:
                raise ExecutionError(f"Stage {index} ({stage.kind}) failed: {exc}") from exc
            stages_applied += 1

        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            "Pipeline on %s: %d stages, %d -> %d rows in %.1f ms",
            pipeline.object_name, stages_applied, len(source_rows), len(rows), duration_ms,
        )
        return AggregationResult(
            rows=rows,
            row_count=len(rows),
            stats=ExecutionStats(
                duration_ms=duration_ms,
                stages_applied=stages_applied,
                records_processed=len(source_rows),
            ),
        )

    def execute(
        self,
        pipeline: AggregationPipeline,
        store: RecordStore,
        context: SecurityContext | None = None,
        cancel: CancellationToken | None = None,
    ) -> AggregationResult:
        """Fetch the source records from *store* and run *pipeline*.

        For non-system contexts a match stage restricting rows to the
        caller's tenant (and owner, when configured) is prepended, and
        lookup targets carrying the same fields are filtered the same way.
        """
        schema = store.schema(pipeline.object_name)
        if schema is None:
            raise SchemaError(f"Unknown object {pipeline.object_name!r}")

        scope = scope_conditions(
            context,
            tenant_field=self.config.tenant_field,
            owner_field=self.config.owner_field,
            scope_by_owner=self.config.scope_by_owner,
        )
        if scope:
            pipeline = self.scoped(pipeline, scope)
            schema = ObjectSchema(
                name=schema.name,
                fields={**{k: "any" for k in scope}, **schema.fields},
            )

        if cancel is not None:
            cancel.raise_if_cancelled("record fetch")
        rows = store.find(pipeline.object_name, None, None)

        def fetch_related(name: str) -> list[Row] | None:
            related_schema = store.schema(name)
            if related_schema is None:
                return None
            records = store.find(name, None, None)
            applicable = {k: v for k, v in scope.items() if related_schema.has_field(k)}
            if applicable:
                records = [r for r in records if all(r.get(k) == v for k, v in applicable.items())]
            return records

        return self.run(
            pipeline,
            rows,
            schema=schema,
            related=fetch_related,
            related_schema=store.schema,
            cancel=cancel,
        )

    @staticmethod
    def scoped(pipeline: AggregationPipeline, scope: dict[str, Any]) -> AggregationPipeline:
        """Return a copy of *pipeline* with a leading scope match stage."""
        conditions = [Condition(field=k, op="eq", value=v) for k, v in scope.items()]
        where = conditions[0] if len(conditions) == 1 else AllOf(conditions=conditions)
        return AggregationPipeline(
            object_name=pipeline.object_name,
            stages=[MatchStage(where=where), *pipeline.stages],
        )

    def _prefetch_lookups(
        self,
        pipeline: AggregationPipeline,
        related: RelatedFetcher | None,
        related_schema: Callable[[str], ObjectSchema | None] | None,
    ) -> tuple[dict[str, list[Row]], dict[str, ObjectSchema] | None]:
        lookups = [s for s in pipeline.stages if isinstance(s, LookupStage)]
        if not lookups:
            return {}, None
        if related is None:
            raise ValidationError("Pipeline uses lookup stages but no related-record source was given")

        rows_by_object: dict[str, list[Row]] = {}
        schemas: dict[str, ObjectSchema] = {}
        for stage in lookups:
            name = stage.from_object
            if name in rows_by_object:
                continue
            records = related(name)
            if records is None:
                raise SchemaError(f"Unknown lookup object {name!r}")
            rows_by_object[name] = records
            known = related_schema(name) if related_schema is not None else None
            schemas[name] = known or ObjectSchema.infer(name, records)
        return rows_by_object, schemas

    # ── Stage implementations ──────────────────────────────────────────────

    def _apply(self, stage: AggregationStage, rows: list[Row], related: dict[str, list[Row]]) -> list[Row]:
        if isinstance(stage, MatchStage):
            return [r for r in rows if predicates.evaluate(stage.where, r)]
        if isinstance(stage, GroupStage):
            return _group(stage, rows)
        if isinstance(stage, SortStage):
            return _sort(stage, rows)
        if isinstance(stage, ProjectStage):
            return _project(stage, rows)
        if isinstance(stage, LimitStage):
            return rows[: stage.count] if stage.count > 0 else []
        if isinstance(stage, SkipStage):
            return rows[max(stage.count, 0):]
        if isinstance(stage, LookupStage):
            return _lookup(stage, rows, related.get(stage.from_object, []))
        if isinstance(stage, ComputeStage):
            return [{**r, stage.field: expressions.evaluate(stage.expression, r)} for r in rows]
        if isinstance(stage, UnwindStage):
            return _unwind(stage, rows)
        if isinstance(stage, CountStage):
            return [{stage.as_field: len(rows)}]
        raise ValidationError(f"Unsupported stage kind: {getattr(stage, 'kind', stage)!r}")


def _require_field(fields: dict[str, str] | None, path: str) -> None:
    """Raise unless the root of *path* is available at this point."""
    if fields is None:
        return
    if path in fields:
        return
    root = root_field(path)
    if root in fields and (root == path or fields[root] in _OPAQUE_TYPES):
        return
    raise ValidationError(f"Unknown field {path!r}")


def _field_type(fields: dict[str, str] | None, path: str) -> str:
    if fields is None:
        return "any"
    if path in fields:
        return fields[path]
    return "any"


def _group(stage: GroupStage, rows: list[Row]) -> list[Row]:
    partitions: dict[Any, tuple[list[Any], list[Row]]] = {}
    for row in rows:
        key_values = [value_at(row, k) for k in stage.by]
        key = freeze(key_values)
        if key not in partitions:
            partitions[key] = (key_values, [])
        partitions[key][1].append(row)

    results: list[Row] = []
    for key_values, members in partitions.values():
        out: Row = dict(zip(stage.by, key_values))
        for agg in stage.aggregates:
            out[agg.alias] = _aggregate(agg.op, agg.field, members)
        results.append(out)
    return results


def _aggregate(op: str, field: str | None, members: list[Row]) -> Any:
    if op == "count":
        return len(members)

    values = [v for v in (value_at(r, field or "") for r in members) if v is not None]
    if op in ("sum", "avg"):
        for v in values:
            if not is_number(v):
                raise ExecutionError(f"Cannot {op} non-numeric value {v!r} in field {field!r}")
        if op == "sum":
            return sum(values)
        return sum(values) / len(values) if values else None

    if not values:
        return None
    try:
        return min(values) if op == "min" else max(values)
    except TypeError as exc:
        raise ExecutionError(f"Cannot compute {op} over mixed values in field {field!r}") from exc


def _sort(stage: SortStage, rows: list[Row]) -> list[Row]:
    # Successive stable sorts, least significant key first.
    result = list(rows)
    for key in reversed(stage.keys):
        def sort_key(row: Row, field: str = key.field) -> tuple[bool, Any]:
            value = value_at(row, field)
            return (value is not None, value if value is not None else 0)

        try:
            result.sort(key=sort_key, reverse=key.direction == "desc")
        except TypeError as exc:
            raise ExecutionError(f"Cannot sort on field {key.field!r}: mixed value types") from exc
    return result


def _project(stage: ProjectStage, rows: list[Row]) -> list[Row]:
    if stage.columns:
        return [{c.output: value_at(r, c.source) for c in stage.columns} for r in rows]
    excluded = set(stage.exclude)
    return [{k: v for k, v in r.items() if k not in excluded} for r in rows]


def _lookup(stage: LookupStage, rows: list[Row], related: list[Row]) -> list[Row]:
    index: dict[Any, list[Row]] = {}
    for record in related:
        key = value_at(record, stage.foreign_field)
        if key is not None:
            index.setdefault(freeze(key), []).append(record)

    results: list[Row] = []
    for row in rows:
        key = value_at(row, stage.local_field)
        matches = index.get(freeze(key)) if key is not None else None
        if not matches:
            results.append(row)
            continue
        joined = [dict(m) for m in matches] if stage.many else dict(matches[0])
        results.append({**row, stage.as_field: joined})
    return results


def _unwind(stage: UnwindStage, rows: list[Row]) -> list[Row]:
    results: list[Row] = []
    for row in rows:
        value = value_at(row, stage.field)
        if isinstance(value, (list, tuple)):
            if value:
                results.extend({**row, stage.field: item} for item in value)
            elif stage.preserve_empty:
                results.append({**row, stage.field: None})
        elif value is None:
            if stage.preserve_empty:
                results.append({**row, stage.field: None})
        else:
            results.append(row)
    return results
