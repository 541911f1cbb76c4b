"""Error taxonomy for the analytics engine.

``ValidationError`` and its subclasses describe caller mistakes and are
never retried.  ``ExecutionError`` covers runtime faults; the scheduler
retries those with backoff, dashboards isolate them per widget.
"""

from __future__ import annotations

import builtins


class PivotalError(Exception):
    """Base class for every error raised by pivotal."""


class ValidationError(PivotalError):
    """Bad pipeline, stage, parameter or definition configuration."""


class SchemaError(ValidationError):
    """Reference to an unknown object or field."""


class ReportNotFoundError(ValidationError):
    """No report definition with the requested id."""


class DashboardNotFoundError(ValidationError):
    """No dashboard definition with the requested id."""


class ExecutionError(PivotalError):
    """Runtime fault while evaluating a stage or delivering output."""


class TimeoutError(ExecutionError, builtins.TimeoutError):  # noqa: A001
    """Cancellation signal observed at a stage boundary."""


class DeliveryError(ExecutionError):
    """The delivery sink rejected or failed to send a report."""


class SchedulerError(PivotalError):
    """A scheduled run was skipped because a previous run is still going."""


class PluginStartupError(PivotalError):
    """Fatal plugin startup failure; the subsystem stays disabled."""
