"""DashboardManager — dashboard registry and concurrent widget resolution."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from pivotal.aggregation.pipeline import AggregationResult
from pivotal.cancellation import CancellationToken, with_timeout
from pivotal.context import SecurityContext
from pivotal.dashboards.layout import validate_layout
from pivotal.dashboards.models import (
    DashboardDefinition,
    DashboardLayout,
    DashboardWidget,
    PositionedWidget,
    WidgetFailure,
    WidgetSuccess,
)
from pivotal.errors import (
    DashboardNotFoundError,
    PivotalError,
    ReportNotFoundError,
    TimeoutError,
    ValidationError,
)
from pivotal.reports.manager import ReportManager
from pivotal.settings import AnalyticsConfig

logger = logging.getLogger(__name__)

# Poll interval while waiting on widgets under a cancellation token.
_POLL_SECONDS = 0.05


class DashboardManager:
    """Store dashboards and resolve their widgets in parallel.

    Parameters
    ----------
    reports:
        Report manager used for report-backed widgets; its engine and
        store serve inline-pipeline widgets.
    config:
        Supplies ``max_concurrent_widgets``.  Defaults to the report
        manager's config.
    """

    def __init__(self, reports: ReportManager, config: AnalyticsConfig | None = None) -> None:
        self.reports = reports
        self.config = config or reports.config
        self._lock = threading.Lock()
        self._dashboards: dict[str, DashboardDefinition] = {}

    def register(self, definition: DashboardDefinition | dict[str, Any]) -> DashboardDefinition:
        """Validate and add a dashboard.

        Raises
        ------
        ValidationError
            Duplicate id, invalid grid placement, widget with zero or two
            sources, unknown report or an invalid inline pipeline.
        """
        definition = self._validated(definition)
        with self._lock:
            if definition.id in self._dashboards:
                raise ValidationError(f"Dashboard {definition.id!r} is already registered")
            self._dashboards[definition.id] = definition
        logger.info("Registered dashboard %s with %d widgets", definition.id, len(definition.widgets))
        return definition

    def get(self, dashboard_id: str) -> DashboardDefinition:
        with self._lock:
            definition = self._dashboards.get(dashboard_id)
        if definition is None:
            raise DashboardNotFoundError(f"Dashboard {dashboard_id!r} not found")
        return definition

    def list(self, user_id: str | None = None) -> list[DashboardDefinition]:
        """Dashboards owned by or shared with *user_id* (all when None)."""
        with self._lock:
            dashboards = list(self._dashboards.values())
        if user_id is not None:
            dashboards = [d for d in dashboards if d.shared or d.owner == user_id]
        return sorted(dashboards, key=lambda d: (d.name.lower(), d.id))

    def update(self, dashboard_id: str, **changes: Any) -> DashboardDefinition:
        """Replace top-level fields of a dashboard; widgets are re-checked as a whole."""
        changes.pop("id", None)
        data = self.get(dashboard_id).model_dump()
        data.update(changes)
        return self._replace(dashboard_id, data)

    def add_widget(self, dashboard_id: str, widget: DashboardWidget | dict[str, Any]) -> DashboardDefinition:
        """Append *widget*; the grid must stay free of overlaps.

        Raises
        ------
        ValidationError
            Duplicate widget id, invalid placement or source.
        """
        if isinstance(widget, DashboardWidget):
            widget = widget.model_dump()
        data = self.get(dashboard_id).model_dump()
        data["widgets"].append(widget)
        return self._replace(dashboard_id, data)

    def remove_widget(self, dashboard_id: str, widget_id: str) -> DashboardDefinition:
        data = self.get(dashboard_id).model_dump()
        remaining = [w for w in data["widgets"] if w["id"] != widget_id]
        if len(remaining) == len(data["widgets"]):
            raise ValidationError(f"Dashboard {dashboard_id!r} has no widget {widget_id!r}")
        data["widgets"] = remaining
        return self._replace(dashboard_id, data)

    def delete(self, dashboard_id: str) -> None:
        with self._lock:
            if self._dashboards.pop(dashboard_id, None) is None:
                raise DashboardNotFoundError(f"Dashboard {dashboard_id!r} not found")
        logger.info("Deleted dashboard %s", dashboard_id)

    def resolve(
        self,
        dashboard_id: str,
        context: SecurityContext | None = None,
        *,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> DashboardLayout:
        """Resolve every widget concurrently into a layout payload.

        One widget failing never fails the call; its slot carries a
        :class:`WidgetFailure`.  On cancellation or timeout, widgets that
        have not finished are listed in ``discarded`` instead.
        """
        definition = self.get(dashboard_id)
        token = with_timeout(cancel, timeout)
        widgets = definition.widgets
        outcomes: dict[str, WidgetSuccess | WidgetFailure] = {}
        discarded: list[str] = []

        if widgets:
            workers = min(self.config.max_concurrent_widgets, len(widgets))
            executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"dashboard-{dashboard_id}")
            try:
                futures: dict[Future, DashboardWidget] = {
                    executor.submit(self._resolve_widget, w, context, token): w for w in widgets
                }
                pending = set(futures)
                while pending:
                    if token is not None and token.cancelled:
                        break
                    done, pending = wait(
                        pending,
                        timeout=_POLL_SECONDS if token is not None else None,
                        return_when=FIRST_COMPLETED,
                    )
                    for future in done:
                        widget = futures[future]
                        outcome = future.result()
                        if _aborted(outcome, token):
                            discarded.append(widget.id)
                        else:
                            outcomes[widget.id] = outcome
                for future in pending:
                    future.cancel()
                    discarded.append(futures[future].id)
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

        cancelled = token is not None and token.cancelled and bool(discarded)
        if cancelled:
            logger.warning(
                "Dashboard %s resolution cancelled (%s); discarded %d widget(s)",
                dashboard_id, token.reason, len(discarded),
            )

        ordered = sorted(
            (w for w in widgets if w.id in outcomes),
            key=lambda w: (w.position.y, w.position.x),
        )
        return DashboardLayout(
            dashboard_id=definition.id,
            name=definition.name,
            layout=definition.layout,
            widgets=[
                PositionedWidget(
                    id=w.id,
                    type=w.type,
                    title=w.title,
                    size=w.size,
                    position=w.position,
                    outcome=outcomes[w.id],
                )
                for w in ordered
            ],
            cancelled=cancelled,
            discarded=sorted(discarded, key=[w.id for w in widgets].index),
        )

    def _resolve_widget(
        self,
        widget: DashboardWidget,
        context: SecurityContext | None,
        token: CancellationToken | None,
    ) -> WidgetSuccess | WidgetFailure:
        try:
            if widget.report_id is not None:
                report = self.reports.execute_report(
                    widget.report_id, widget.parameters, context, cancel=token,
                )
                return WidgetSuccess(
                    result=AggregationResult(rows=report.rows, row_count=report.row_count, stats=report.stats),
                    content=report.content,
                )
            result = self.reports.engine.execute(widget.pipeline, self.reports.store, context, token)
            return WidgetSuccess(result=result)
        except PivotalError as exc:
            logger.debug("Widget %s failed", widget.id, exc_info=True)
            return WidgetFailure(error_type=type(exc).__name__, message=str(exc))
        except Exception as exc:
            logger.exception("Widget %s raised an unexpected error", widget.id)
            return WidgetFailure(error_type=type(exc).__name__, message=str(exc))

    def _replace(self, dashboard_id: str, data: dict[str, Any]) -> DashboardDefinition:
        data["updated_at"] = datetime.now(timezone.utc)
        definition = self._validated(data)
        with self._lock:
            if dashboard_id not in self._dashboards:
                raise DashboardNotFoundError(f"Dashboard {dashboard_id!r} not found")
            self._dashboards[dashboard_id] = definition
        logger.info("Updated dashboard %s (%d widgets)", dashboard_id, len(definition.widgets))
        return definition

    def _validated(self, definition: DashboardDefinition | dict[str, Any]) -> DashboardDefinition:
        if not isinstance(definition, DashboardDefinition):
            try:
                definition = DashboardDefinition.model_validate(definition)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid dashboard definition: {exc}") from exc

        validate_layout(definition)
        for widget in definition.widgets:
            self._check_source(widget)
        return definition

    def _check_source(self, widget: DashboardWidget) -> None:
        if widget.report_id is not None:
            if not self.reports.exists(widget.report_id):
                raise ReportNotFoundError(
                    f"Widget {widget.id!r} references unknown report {widget.report_id!r}"
                )
            return
        pipeline = widget.pipeline
        schema = self.reports.store.schema(pipeline.object_name)
        try:
            self.reports.engine.validate(pipeline, schema)
        except ValidationError as exc:
            raise type(exc)(f"Widget {widget.id!r}: {exc}") from exc


def _aborted(outcome: WidgetSuccess | WidgetFailure, token: CancellationToken | None) -> bool:
    """A widget stopped by the call's own token is discarded, not failed."""
    return (
        token is not None
        and token.cancelled
        and isinstance(outcome, WidgetFailure)
        and outcome.error_type == TimeoutError.__name__
    )
