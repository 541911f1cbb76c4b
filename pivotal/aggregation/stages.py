"""Aggregation stage definitions.

Stages are a tagged union keyed by ``kind``; each variant carries its
own typed parameters.  :func:`parse_stage` also accepts the compact
single-key form used in report configuration files::

    {"match": {"status": "open"}}
    {"group": {"by": "owner", "count": True}}
    {"sort": {"count": -1}}
    {"limit": 10}
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from pivotal.aggregation.expressions import Expression, parse_expression
from pivotal.aggregation.predicates import Predicate, parse_predicate
from pivotal.errors import ValidationError

AGGREGATE_OPS = ("count", "sum", "avg", "min", "max")

STAGE_KINDS = (
    "match",
    "group",
    "sort",
    "project",
    "limit",
    "skip",
    "lookup",
    "compute",
    "unwind",
    "count",
)


class MatchStage(BaseModel):
    """Keep rows satisfying ``where``."""

    kind: Literal["match"] = "match"
    where: Predicate


class GroupAggregate(BaseModel):
    op: str
    field: str | None = None
    alias: str


class GroupStage(BaseModel):
    """Partition rows by ``by`` and compute ``aggregates`` per partition."""

    kind: Literal["group"] = "group"
    by: list[str] = Field(default_factory=list)
    aggregates: list[GroupAggregate] = Field(default_factory=list)


class SortKey(BaseModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class SortStage(BaseModel):
    kind: Literal["sort"] = "sort"
    keys: list[SortKey]


class ProjectField(BaseModel):
    source: str
    alias: str | None = None

    @property
    def output(self) -> str:
        return self.alias or self.source


class ProjectStage(BaseModel):
    """Select/rename ``columns``, or drop ``exclude`` when no columns are given."""

    kind: Literal["project"] = "project"
    columns: list[ProjectField] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class LimitStage(BaseModel):
    kind: Literal["limit"] = "limit"
    count: int


class SkipStage(BaseModel):
    kind: Literal["skip"] = "skip"
    count: int


class LookupStage(BaseModel):
    """Join related records of ``from_object`` on ``local_field == foreign_field``."""

    kind: Literal["lookup"] = "lookup"
    from_object: str
    local_field: str
    foreign_field: str = "id"
    as_field: str
    many: bool = False


class ComputeStage(BaseModel):
    kind: Literal["compute"] = "compute"
    field: str
    expression: Expression


class UnwindStage(BaseModel):
    kind: Literal["unwind"] = "unwind"
    field: str
    preserve_empty: bool = False


class CountStage(BaseModel):
    kind: Literal["count"] = "count"
    as_field: str = "count"


AggregationStage = Annotated[
    Union[
        MatchStage,
        GroupStage,
        SortStage,
        ProjectStage,
        LimitStage,
        SkipStage,
        LookupStage,
        ComputeStage,
        UnwindStage,
        CountStage,
    ],
    Field(discriminator="kind"),
]

_STAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(AggregationStage)


def parse_stage(raw: Any) -> AggregationStage:
    """Build a typed stage from a typed or compact dict.

    Raises
    ------
    ValidationError
        For unknown stage kinds or malformed stage bodies.
    """
    if isinstance(raw, BaseModel) and getattr(raw, "kind", None) in STAGE_KINDS:
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(f"Stage must be a mapping, got {type(raw).__name__}")

    try:
        if "kind" in raw:
            if raw["kind"] not in STAGE_KINDS:
                raise ValidationError(f"Unknown stage kind: {raw['kind']!r}")
            body = dict(raw)
            if body["kind"] == "match" and not isinstance(body.get("where"), BaseModel):
                body["where"] = parse_predicate(body.get("where", {}))
            if body["kind"] == "compute" and "expression" in body:
                body["expression"] = parse_expression(body["expression"])
            return _STAGE_ADAPTER.validate_python(body)

        if len(raw) != 1:
            raise ValidationError(
                f"Compact stage must have exactly one key, got {sorted(raw)}"
            )
        (kind, body), = raw.items()
        parser = _COMPACT_PARSERS.get(kind)
        if parser is None:
            raise ValidationError(f"Unknown stage kind: {kind!r}")
        return parser(body)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid stage {raw!r}: {exc}") from exc
    except (KeyError, TypeError) as exc:
        raise ValidationError(f"Invalid stage {raw!r}: {exc}") from exc


def _parse_match(body: Any) -> MatchStage:
    return MatchStage(where=parse_predicate(body))


def _parse_group(body: Any) -> GroupStage:
    if not isinstance(body, dict):
        raise ValidationError("group body must be a mapping")
    by = body.get("by", body.get("_id"))
    keys = [] if by is None else ([by] if isinstance(by, str) else list(by))

    aggregates: list[GroupAggregate] = []
    for key, value in body.items():
        if key in ("by", "_id"):
            continue
        if key == "count":
            if value is True:
                aggregates.append(GroupAggregate(op="count", alias="count"))
            elif isinstance(value, str):
                aggregates.append(GroupAggregate(op="count", alias=value))
            elif value not in (False, None):
                raise ValidationError(f"group count must be true or an alias, got {value!r}")
        elif key == "aggregates":
            aggregates.extend(GroupAggregate.model_validate(a) for a in value)
        elif key in AGGREGATE_OPS:
            # {"sum": {"total": "amount"}}
            if not isinstance(value, dict):
                raise ValidationError(f"group {key} expects {{alias: field}}")
            for alias, field in value.items():
                aggregates.append(GroupAggregate(op=key, field=field, alias=alias))
        elif isinstance(value, dict) and len(value) == 1:
            # {"total": {"$sum": "amount"}}
            (op, field), = value.items()
            op = op.lstrip("$")
            aggregates.append(
                GroupAggregate(op=op, field=field if isinstance(field, str) else None, alias=key)
            )
        else:
            raise ValidationError(f"Unrecognised group entry {key!r}: {value!r}")
    return GroupStage(by=keys, aggregates=aggregates)


def _parse_direction(value: Any) -> str:
    if value in (1, "asc", "ASC", "ascending"):
        return "asc"
    if value in (-1, "desc", "DESC", "descending"):
        return "desc"
    raise ValidationError(f"Invalid sort direction: {value!r}")


def _parse_sort(body: Any) -> SortStage:
    keys: list[SortKey] = []
    if isinstance(body, str):
        keys.append(SortKey(field=body))
    elif isinstance(body, dict):
        for field, direction in body.items():
            keys.append(SortKey(field=field, direction=_parse_direction(direction)))
    elif isinstance(body, list):
        for item in body:
            if isinstance(item, str):
                keys.append(SortKey(field=item))
            else:
                field, direction = item
                keys.append(SortKey(field=field, direction=_parse_direction(direction)))
    else:
        raise ValidationError(f"Invalid sort body: {body!r}")
    if not keys:
        raise ValidationError("sort needs at least one key")
    return SortStage(keys=keys)


def _parse_project(body: Any) -> ProjectStage:
    if isinstance(body, list):
        return ProjectStage(columns=[ProjectField(source=f) for f in body])
    if not isinstance(body, dict):
        raise ValidationError(f"Invalid project body: {body!r}")
    fields: list[ProjectField] = []
    exclude: list[str] = []
    for source, value in body.items():
        if value == 0 or value is False:
            exclude.append(source)
        elif isinstance(value, str):
            fields.append(ProjectField(source=source, alias=value))
        else:
            fields.append(ProjectField(source=source))
    if fields and exclude:
        raise ValidationError("project cannot mix included and excluded fields")
    return ProjectStage(columns=fields, exclude=exclude)


def _parse_count_body(name: str, body: Any) -> int:
    if isinstance(body, dict):
        body = body.get("n", body.get("count", body.get(name)))
    if not isinstance(body, int) or isinstance(body, bool):
        raise ValidationError(f"{name} expects an integer, got {body!r}")
    return body


def _parse_lookup(body: Any) -> LookupStage:
    if not isinstance(body, dict):
        raise ValidationError(f"Invalid lookup body: {body!r}")
    return LookupStage(
        from_object=body.get("from_object", body.get("from")),
        local_field=body.get("local_field", body.get("localField")),
        foreign_field=body.get("foreign_field", body.get("foreignField", "id")),
        as_field=body.get("as_field", body.get("as")),
        many=bool(body.get("many", False)),
    )


def _parse_compute(body: Any) -> ComputeStage:
    if not isinstance(body, dict):
        raise ValidationError(f"Invalid compute body: {body!r}")
    if "field" in body and ("expression" in body or "expr" in body):
        expr = body.get("expression", body.get("expr"))
        return ComputeStage(field=body["field"], expression=parse_expression(expr))
    if len(body) == 1:
        (field, expr), = body.items()
        return ComputeStage(field=field, expression=parse_expression(expr))
    raise ValidationError("compute derives exactly one field per stage")


def _parse_unwind(body: Any) -> UnwindStage:
    if isinstance(body, str):
        return UnwindStage(field=body.lstrip("$"))
    if isinstance(body, dict):
        field = body.get("field", body.get("path"))
        if not isinstance(field, str):
            raise ValidationError("unwind needs a field")
        return UnwindStage(field=field.lstrip("$"), preserve_empty=bool(body.get("preserve_empty", False)))
    raise ValidationError(f"Invalid unwind body: {body!r}")


def _parse_count(body: Any) -> CountStage:
    if isinstance(body, str):
        return CountStage(as_field=body)
    if isinstance(body, dict):
        return CountStage(as_field=body.get("as", body.get("as_field", "count")))
    return CountStage()


_COMPACT_PARSERS = {
    "match": _parse_match,
    "filter": _parse_match,
    "group": _parse_group,
    "sort": _parse_sort,
    "project": _parse_project,
    "select": _parse_project,
    "limit": lambda body: LimitStage(count=_parse_count_body("limit", body)),
    "skip": lambda body: SkipStage(count=_parse_count_body("skip", body)),
    "lookup": _parse_lookup,
    "join": _parse_lookup,
    "compute": _parse_compute,
    "unwind": _parse_unwind,
    "count": _parse_count,
}
