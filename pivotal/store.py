"""Record store boundary — typed, filterable record queries by object name."""

from __future__ import annotations

import abc
import copy
import logging
import threading
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

FIELD_TYPES = ("string", "number", "integer", "boolean", "date", "datetime", "list", "object", "any")

NUMERIC_TYPES = ("number", "integer")


class ObjectSchema(BaseModel):
    """Field layout of a named object."""

    name: str
    fields: dict[str, str] = Field(default_factory=dict)
    """Field name -> type name (one of ``FIELD_TYPES``)."""

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def field_type(self, name: str) -> str:
        return self.fields.get(name, "any")

    @classmethod
    def infer(cls, name: str, rows: list[dict[str, Any]]) -> ObjectSchema:
        """Build a schema from the union of keys found in *rows*."""
        seen: dict[str, set[str]] = {}
        for row in rows:
            for key, value in row.items():
                types = seen.setdefault(key, set())
                if value is not None:
                    types.add(_infer_type(value))

        fields: dict[str, str] = {}
        for key, types in seen.items():
            if len(types) == 1:
                fields[key] = types.pop()
            elif types and types <= set(NUMERIC_TYPES):
                fields[key] = "number"
            else:
                fields[key] = "any"
        return cls(name=name, fields=fields)


def _infer_type(value: Any) -> str:
    if value is None:
        return "any"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "object"
    return "any"


class RecordStore(abc.ABC):
    """Read-only query interface the engine consumes."""

    @abc.abstractmethod
    def find(
        self,
        object_name: str,
        filter: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return records of *object_name* matching the equality *filter*.

        ``options`` may carry ``offset`` and ``limit``.
        """

    @abc.abstractmethod
    def schema(self, object_name: str) -> ObjectSchema | None:
        """Return the schema of *object_name*, or None if it is unknown."""


class InMemoryRecordStore(RecordStore):
    """Dict-backed record store, used for embedding and tests.

    Parameters
    ----------
    objects:
        Mapping of object name -> list of records.
    schemas:
        Optional explicit schemas; objects without one get an inferred schema.
    """

    def __init__(
        self,
        objects: dict[str, list[dict[str, Any]]] | None = None,
        schemas: list[ObjectSchema] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, list[dict[str, Any]]] = {}
        self._schemas: dict[str, ObjectSchema] = {s.name: s for s in (schemas or [])}
        self.query_count = 0
        for name, rows in (objects or {}).items():
            self.insert(name, rows)

    def insert(self, object_name: str, rows: list[dict[str, Any]]) -> None:
        """Append records to *object_name*."""
        with self._lock:
            self._objects.setdefault(object_name, []).extend(copy.deepcopy(rows))

    def define(self, schema: ObjectSchema) -> None:
        """Register an explicit schema."""
        with self._lock:
            self._schemas[schema.name] = schema
            self._objects.setdefault(schema.name, [])

    def find(
        self,
        object_name: str,
        filter: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            self.query_count += 1
            rows = list(self._objects.get(object_name, []))

        if filter:
            rows = [r for r in rows if all(r.get(k) == v for k, v in filter.items())]

        opts = options or {}
        offset = int(opts.get("offset", 0) or 0)
        limit = opts.get("limit")
        rows = rows[offset:]
        if limit is not None:
            rows = rows[: max(int(limit), 0)]

        logger.debug("find(%s) returned %d records", object_name, len(rows))
        return copy.deepcopy(rows)

    def schema(self, object_name: str) -> ObjectSchema | None:
        with self._lock:
            explicit = self._schemas.get(object_name)
            if explicit is not None:
                return explicit
            if object_name not in self._objects:
                return None
            rows = list(self._objects[object_name])
        return ObjectSchema.infer(object_name, rows)
