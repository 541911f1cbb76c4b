"""Expression trees evaluated by compute stages."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from pivotal.aggregation.values import MISSING, is_number, resolve_path
from pivotal.errors import ExecutionError, ValidationError

ARITHMETIC_OPS = ("add", "subtract", "multiply", "divide", "mod", "abs", "round")
EXPRESSION_OPS = ARITHMETIC_OPS + ("concat", "coalesce")

_ARITY: dict[str, tuple[int, int | None]] = {
    "add": (1, None),
    "subtract": (2, 2),
    "multiply": (1, None),
    "divide": (2, 2),
    "mod": (2, 2),
    "abs": (1, 1),
    "round": (1, 2),
    "concat": (1, None),
    "coalesce": (1, None),
}


class FieldRef(BaseModel):
    kind: Literal["field"] = "field"
    name: str


class Constant(BaseModel):
    kind: Literal["literal"] = "literal"
    value: Any = None


class Operation(BaseModel):
    kind: Literal["op"] = "op"
    op: str
    args: list[Expression] = Field(default_factory=list)


Expression = Annotated[
    Union[FieldRef, Constant, Operation],
    Field(discriminator="kind"),
]

Operation.model_rebuild()


def parse_expression(raw: Any) -> Expression:
    """Parse the compact expression form.

    ``"$price"`` is a field reference, ``{"$multiply": ["$price", "$qty"]}``
    an operation, anything else a literal.
    """
    if isinstance(raw, (FieldRef, Constant, Operation)):
        return raw
    if isinstance(raw, str) and raw.startswith("$") and len(raw) > 1:
        return FieldRef(name=raw[1:])
    if isinstance(raw, dict):
        if "kind" in raw:
            kind = raw["kind"]
            if kind == "field":
                return FieldRef(name=raw["name"])
            if kind == "literal":
                return Constant(value=raw.get("value"))
            if kind == "op":
                return Operation(op=raw["op"], args=[parse_expression(a) for a in raw.get("args", [])])
            raise ValidationError(f"Unknown expression kind: {kind!r}")
        if len(raw) == 1:
            (key, args), = raw.items()
            if key.startswith("$"):
                if not isinstance(args, list):
                    args = [args]
                return Operation(op=key[1:], args=[parse_expression(a) for a in args])
    return Constant(value=raw)


def iter_field_refs(expr: Expression):
    if isinstance(expr, FieldRef):
        yield expr.name
    elif isinstance(expr, Operation):
        for arg in expr.args:
            yield from iter_field_refs(arg)


def validate_expression(expr: Expression) -> None:
    """Check operator names and arities throughout *expr*."""
    if not isinstance(expr, Operation):
        return
    if expr.op not in EXPRESSION_OPS:
        raise ValidationError(f"Unsupported compute operator: {expr.op!r}")
    low, high = _ARITY[expr.op]
    n = len(expr.args)
    if n < low or (high is not None and n > high):
        raise ValidationError(f"Operator {expr.op!r} got {n} arguments")
    for arg in expr.args:
        validate_expression(arg)


def result_type(expr: Expression) -> str:
    """Best-effort static type of *expr* for downstream validation."""
    if isinstance(expr, Operation):
        if expr.op in ARITHMETIC_OPS:
            return "number"
        if expr.op == "concat":
            return "string"
    return "any"


def evaluate(expr: Expression, row: dict[str, Any]) -> Any:
    """Evaluate *expr* against *row*.

    Raises
    ------
    ExecutionError
        On division by zero or operand type mismatch.
    """
    if isinstance(expr, FieldRef):
        value = resolve_path(row, expr.name)
        return None if value is MISSING else value
    if isinstance(expr, Constant):
        return expr.value

    values = [evaluate(a, row) for a in expr.args]
    op = expr.op

    if op == "coalesce":
        return next((v for v in values if v is not None), None)
    if op == "concat":
        return "".join("" if v is None else str(v) for v in values)

    if op == "round":
        number = _numeric(op, values[0])
        digits = values[1] if len(values) > 1 else 0
        if not isinstance(digits, int) or isinstance(digits, bool):
            raise ExecutionError(f"round() digits must be an integer, got {digits!r}")
        return round(number, digits)

    numbers = [_numeric(op, v) for v in values]
    if op == "add":
        return sum(numbers)
    if op == "multiply":
        product: float = 1
        for n in numbers:
            product *= n
        return product
    if op == "subtract":
        return numbers[0] - numbers[1]
    if op == "abs":
        return abs(numbers[0])
    if numbers[1] == 0:
        raise ExecutionError(f"Division by zero in {op!r}")
    if op == "divide":
        return numbers[0] / numbers[1]
    if op == "mod":
        return numbers[0] % numbers[1]
    raise ValidationError(f"Unsupported compute operator: {op!r}")


def _numeric(op: str, value: Any) -> float:
    if not is_number(value):
        raise ExecutionError(f"Operator {op!r} needs numeric operands, got {value!r}")
    return value
