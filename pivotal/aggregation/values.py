"""Value helpers shared by predicates, expressions and stages."""

from __future__ import annotations

from typing import Any

PARAM_PREFIX = "$param."


class _Missing:
    """Marker for a path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def resolve_path(row: dict[str, Any], path: str) -> Any:
    """Resolve a dot-notation path against a nested dict.

    Example: ``resolve_path({"owner": {"name": "a"}}, "owner.name")``
    returns ``"a"``.  Unresolvable paths return ``MISSING``.
    """
    current: Any = row
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return MISSING
    return current


def value_at(row: dict[str, Any], path: str) -> Any:
    """Like :func:`resolve_path` but folds ``MISSING`` into ``None``."""
    value = resolve_path(row, path)
    return None if value is MISSING else value


def root_field(path: str) -> str:
    return path.split(".", 1)[0]


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(PARAM_PREFIX)


def placeholder_name(value: str) -> str:
    return value[len(PARAM_PREFIX):]


def freeze(value: Any) -> Any:
    """Return a hashable stand-in for *value* (lists and dicts included)."""
    if isinstance(value, dict):
        return ("__dict__", tuple(sorted((k, freeze(v)) for k, v in value.items())))
    if isinstance(value, (list, tuple)):
        return ("__list__", tuple(freeze(v) for v in value))
    if isinstance(value, set):
        return ("__set__", tuple(sorted((freeze(v) for v in value), key=repr)))
    return value
