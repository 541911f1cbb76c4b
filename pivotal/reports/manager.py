"""ReportManager — definition registry, parameter binding, cached execution."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from pivotal.aggregation.engine import AggregationEngine
from pivotal.aggregation.stages import LookupStage
from pivotal.cancellation import CancellationToken, with_timeout
from pivotal.context import SecurityContext
from pivotal.errors import ReportNotFoundError, ValidationError
from pivotal.reports.binding import bind_pipeline, pipeline_placeholders, resolve_parameters
from pivotal.reports.cache import ResultCache, cache_key
from pivotal.reports.formatter import ReportFormatter
from pivotal.reports.models import (
    ReportDefinition,
    ReportFormat,
    ReportListOptions,
    ReportPage,
    ReportResult,
)
from pivotal.settings import AnalyticsConfig
from pivotal.store import ObjectSchema, RecordStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReportManager:
    """Register report definitions and execute them against a record store.

    Parameters
    ----------
    store:
        Record source for every execution.
    config:
        Limits, cache and scoping settings.
    cache:
        Result cache; built from *config* when omitted.
    clock:
        Wall-clock source for ``generated_at`` stamps.
    """

    def __init__(
        self,
        store: RecordStore,
        config: AnalyticsConfig | None = None,
        *,
        engine: AggregationEngine | None = None,
        cache: ResultCache | None = None,
        formatter: ReportFormatter | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.config = config or AnalyticsConfig()
        self.engine = engine or AggregationEngine(self.config)
        if cache is None:
            cache = ResultCache(
                ttl_seconds=self.config.cache_ttl_seconds,
                max_entries=self.config.cache_max_entries,
            )
        self.cache = cache
        self.formatter = formatter or ReportFormatter()
        self._clock = clock
        self._lock = threading.Lock()
        self._definitions: dict[str, ReportDefinition] = {}
        self._last_stamp: datetime | None = None

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def register(self, definition: ReportDefinition | dict[str, Any]) -> ReportDefinition:
        """Validate and add a definition.

        Raises
        ------
        ValidationError
            Malformed definition, duplicate id, undeclared placeholder or a
            pipeline that fails validation against the store schema.
        """
        definition = self._coerce(definition)
        self._check(definition)
        with self._lock:
            if definition.id in self._definitions:
                raise ValidationError(f"Report {definition.id!r} is already registered")
            self._definitions[definition.id] = definition
        logger.info("Registered report %s (%s) on %s", definition.id, definition.name, definition.object_name)
        return definition

    def create(self, name: str, pipeline: Any, **fields: Any) -> ReportDefinition:
        """Build a definition from keyword fields and register it."""
        return self.register({"name": name, "pipeline": pipeline, **fields})

    def get(self, definition_id: str) -> ReportDefinition:
        with self._lock:
            definition = self._definitions.get(definition_id)
        if definition is None:
            raise ReportNotFoundError(f"Report {definition_id!r} not found")
        return definition

    def exists(self, definition_id: str) -> bool:
        with self._lock:
            return definition_id in self._definitions

    def update(self, definition_id: str, **changes: Any) -> ReportDefinition:
        """Replace fields of an existing definition and drop its cached results."""
        current = self.get(definition_id)
        changes.pop("id", None)
        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = self._clock()
        updated = self._coerce(data)
        self._check(updated)
        with self._lock:
            self._definitions[definition_id] = updated
        self.cache.invalidate(f"{definition_id}:")
        logger.info("Updated report %s", definition_id)
        return updated

    def delete(self, definition_id: str) -> None:
        with self._lock:
            if self._definitions.pop(definition_id, None) is None:
                raise ReportNotFoundError(f"Report {definition_id!r} not found")
        self.cache.invalidate(f"{definition_id}:")
        logger.info("Deleted report %s", definition_id)

    def list_reports(self, options: ReportListOptions | None = None, **filters: Any) -> ReportPage:
        """Filter and paginate definitions.  Never executes anything."""
        if options is None:
            try:
                options = ReportListOptions(**filters)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid list options: {exc}") from exc

        with self._lock:
            candidates = list(self._definitions.values())

        needle = options.search.lower() if options.search else None
        matched = [
            d for d in candidates
            if (options.object_name is None or d.object_name == options.object_name)
            and (options.format is None or d.format == options.format)
            and (options.category is None or d.category == options.category)
            and (options.tag is None or options.tag in d.tags)
            and (options.created_by is None or d.created_by == options.created_by)
            and (needle is None or needle in d.name.lower())
        ]
        matched.sort(key=lambda d: (d.name.lower(), d.id))
        return ReportPage(
            items=matched[options.offset: options.offset + options.limit],
            total=len(matched),
            offset=options.offset,
            limit=options.limit,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_report(
        self,
        definition_id: str,
        params: dict[str, Any] | None = None,
        context: SecurityContext | None = None,
        *,
        format: ReportFormat | str | None = None,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> ReportResult:
        """Resolve parameters, consult the cache, run and render a report.

        A ``None`` context runs with system privileges.

        Raises
        ------
        ReportNotFoundError
            Unknown *definition_id*.
        ValidationError
            Bad parameters or a pipeline invalid after binding.
        ExecutionError
            Runtime fault, including :class:`TimeoutError`.
        """
        definition = self.get(definition_id)
        resolved = resolve_parameters(definition, params)
        try:
            fmt = ReportFormat(format) if format is not None else definition.format
        except ValueError as exc:
            raise ValidationError(f"Unsupported report format: {format!r}") from exc
        scope = context.scope_key() if context is not None else "system"
        key = cache_key(definition.id, resolved, fmt.value, scope)

        if self.config.cache_enabled:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for report %s", definition.id)
                return cached

        token = with_timeout(
            cancel,
            timeout if timeout is not None else self.config.report_timeout_seconds,
        )
        pipeline = bind_pipeline(definition.pipeline, resolved)
        aggregation = self.engine.execute(pipeline, self.store, context, token)

        result = ReportResult(
            report_id=definition.id,
            report_name=definition.name,
            format=fmt,
            rows=aggregation.rows,
            content=self.formatter.render(fmt, aggregation.rows, title=definition.name),
            row_count=aggregation.row_count,
            parameters=resolved,
            stats=aggregation.stats,
            generated_at=self._stamp(),
            cache_key=key,
        )
        if self.config.cache_enabled:
            self.cache.put(key, result)
        logger.debug(
            "Executed report %s: %d rows in %.1f ms",
            definition.id, result.row_count, result.stats.duration_ms,
        )
        return result

    def _stamp(self) -> datetime:
        """Current time, never earlier than any stamp already issued."""
        now = self._clock()
        with self._lock:
            if self._last_stamp is not None and self._last_stamp > now:
                now = self._last_stamp
            self._last_stamp = now
        return now

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce(definition: ReportDefinition | dict[str, Any]) -> ReportDefinition:
        if isinstance(definition, ReportDefinition):
            return definition
        try:
            return ReportDefinition.model_validate(definition)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid report definition: {exc}") from exc

    def _check(self, definition: ReportDefinition) -> None:
        names = [p.name for p in definition.parameters]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate parameter name(s): {', '.join(duplicates)}")

        undeclared = sorted(pipeline_placeholders(definition.pipeline) - set(names))
        if undeclared:
            raise ValidationError(
                f"Pipeline references undeclared parameter(s): {', '.join(undeclared)}"
            )

        for param in definition.parameters:
            param.coerce(param.default)

        schema = self.store.schema(definition.object_name)
        schemas: dict[str, ObjectSchema] | None = None
        lookups = [s for s in definition.pipeline.stages if isinstance(s, LookupStage)]
        if lookups:
            schemas = {}
            for stage in lookups:
                foreign = self.store.schema(stage.from_object)
                if foreign is not None:
                    schemas[stage.from_object] = foreign
        self.engine.validate(definition.pipeline, schema, schemas)
