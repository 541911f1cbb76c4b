"""Predicate trees used by match stages."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from pivotal.aggregation.values import MISSING, is_placeholder, resolve_path
from pivotal.errors import ExecutionError, ValidationError

OPERATORS = (
    "eq",
    "ne",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "nin",
    "contains",
    "starts_with",
    "ends_with",
    "exists",
)

OPERATOR_ALIASES: dict[str, str] = {
    "$eq": "eq",
    "$ne": "ne",
    "$gt": "gt",
    "$gte": "gte",
    "$lt": "lt",
    "$lte": "lte",
    "$in": "in",
    "$nin": "nin",
    "$contains": "contains",
    "$startsWith": "starts_with",
    "$endsWith": "ends_with",
    "$exists": "exists",
    "=": "eq",
    "==": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}


class Condition(BaseModel):
    """Leaf predicate: ``field <op> value``."""

    kind: Literal["condition"] = "condition"
    field: str
    op: str = "eq"
    value: Any = None


class AllOf(BaseModel):
    kind: Literal["all"] = "all"
    conditions: list[Predicate] = Field(default_factory=list)


class AnyOf(BaseModel):
    kind: Literal["any"] = "any"
    conditions: list[Predicate] = Field(default_factory=list)


class NotOf(BaseModel):
    kind: Literal["not"] = "not"
    condition: Predicate


Predicate = Annotated[
    Union[Condition, AllOf, AnyOf, NotOf],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
NotOf.model_rebuild()


def normalize_operator(op: str) -> str:
    """Map an operator alias to its canonical name.

    Raises
    ------
    ValidationError
        If *op* is not a supported operator.
    """
    canonical = OPERATOR_ALIASES.get(op, op)
    if canonical not in OPERATORS:
        raise ValidationError(f"Unsupported match operator: {op!r}")
    return canonical


def iter_conditions(predicate: Predicate):
    """Yield every leaf :class:`Condition` in *predicate*."""
    if isinstance(predicate, Condition):
        yield predicate
    elif isinstance(predicate, (AllOf, AnyOf)):
        for child in predicate.conditions:
            yield from iter_conditions(child)
    elif isinstance(predicate, NotOf):
        yield from iter_conditions(predicate.condition)


def validate_predicate(predicate: Predicate) -> None:
    """Check operators and operand shapes of every leaf."""
    for cond in iter_conditions(predicate):
        op = normalize_operator(cond.op)
        if op in ("in", "nin") and not is_placeholder(cond.value):
            if not isinstance(cond.value, (list, tuple, set)):
                raise ValidationError(
                    f"Operator {op!r} on field {cond.field!r} needs a list value."
                )
        if op in ("starts_with", "ends_with") and not isinstance(cond.value, str):
            raise ValidationError(
                f"Operator {op!r} on field {cond.field!r} needs a string value."
            )


def parse_predicate(body: Any) -> Predicate:
    """Parse a match body into a predicate tree.

    Accepts the typed form (dicts carrying ``kind``) and the compact form::

        {"status": "open"}
        {"age": {"$gte": 18, "$lt": 65}}
        {"$or": [{"owner": "a"}, {"owner": "b"}]}
    """
    if isinstance(body, (Condition, AllOf, AnyOf, NotOf)):
        return body
    if not isinstance(body, dict):
        raise ValidationError(f"Match body must be a mapping, got {type(body).__name__}")

    if "kind" in body:
        kind = body["kind"]
        if kind == "condition":
            return Condition(
                field=body["field"],
                op=normalize_operator(body.get("op", "eq")),
                value=body.get("value"),
            )
        if kind in ("all", "any"):
            children = [parse_predicate(c) for c in body.get("conditions", [])]
            return AllOf(conditions=children) if kind == "all" else AnyOf(conditions=children)
        if kind == "not":
            return NotOf(condition=parse_predicate(body["condition"]))
        raise ValidationError(f"Unknown predicate kind: {kind!r}")

    parts: list[Predicate] = []
    for key, value in body.items():
        if key == "$and":
            parts.append(AllOf(conditions=[parse_predicate(v) for v in _as_list(key, value)]))
        elif key == "$or":
            parts.append(AnyOf(conditions=[parse_predicate(v) for v in _as_list(key, value)]))
        elif key == "$not":
            parts.append(NotOf(condition=parse_predicate(value)))
        elif key.startswith("$"):
            raise ValidationError(f"Unsupported logical operator: {key!r}")
        elif isinstance(value, dict) and value and all(k.startswith("$") for k in value):
            for op, operand in value.items():
                parts.append(Condition(field=key, op=normalize_operator(op), value=operand))
        else:
            parts.append(Condition(field=key, op="eq", value=value))

    if len(parts) == 1:
        return parts[0]
    return AllOf(conditions=parts)


def _as_list(key: str, value: Any) -> list[Any]:
    if not isinstance(value, list):
        raise ValidationError(f"{key} expects a list of conditions.")
    return value


def evaluate(predicate: Predicate, row: dict[str, Any]) -> bool:
    """Evaluate *predicate* against a single row."""
    if isinstance(predicate, Condition):
        return _evaluate_condition(predicate, row)
    if isinstance(predicate, AllOf):
        return all(evaluate(c, row) for c in predicate.conditions)
    if isinstance(predicate, AnyOf):
        return any(evaluate(c, row) for c in predicate.conditions)
    if isinstance(predicate, NotOf):
        return not evaluate(predicate.condition, row)
    raise ValidationError(f"Unknown predicate node: {predicate!r}")


def _evaluate_condition(cond: Condition, row: dict[str, Any]) -> bool:
    op = normalize_operator(cond.op)
    actual = resolve_path(row, cond.field)
    expected = cond.value

    if op == "exists":
        present = actual is not MISSING and actual is not None
        return present == bool(expected if expected is not None else True)

    if actual is MISSING:
        actual = None

    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected
    if op == "nin":
        return actual not in expected

    if actual is None:
        return False

    if op == "contains":
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        return False
    if op == "starts_with":
        return isinstance(actual, str) and actual.startswith(expected)
    if op == "ends_with":
        return isinstance(actual, str) and actual.endswith(expected)

    if expected is None:
        return False
    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        return actual <= expected
    except TypeError as exc:
        raise ExecutionError(
            f"Cannot compare field {cond.field!r} value {actual!r} with {expected!r}"
        ) from exc
