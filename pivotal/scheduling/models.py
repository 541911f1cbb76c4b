"""Pydantic models for scheduled reports."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from pivotal.context import SecurityContext
from pivotal.reports.models import ReportFormat


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class ScheduleStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class ScheduledReport(BaseModel):
    """A report executed on a recurring schedule and delivered to recipients."""

    id: str = Field(default_factory=_new_id)
    report_id: str
    schedule: str
    """Interval (``every 1 hour``), macro (``@daily``) or 5-field cron."""

    format: Optional[ReportFormat] = None
    """Overrides the definition's format when set."""

    recipients: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = None
    owner: Optional[str] = None
    """Runs are scoped to this tenant/user; unscoped runs use system privileges."""

    enabled: bool = True
    status: ScheduleStatus = ScheduleStatus.IDLE
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    attempts: int = 0
    """Attempts made by the most recent run."""

    run_count: int = 0
    last_error: Optional[str] = None

    def security_context(self) -> SecurityContext:
        if self.tenant_id is None and self.owner is None:
            return SecurityContext.system()
        return SecurityContext(user_id=self.owner, tenant_id=self.tenant_id)


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for failed runs."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=60, ge=0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        return min(self.backoff_seconds * 2 ** (attempt - 1), self.backoff_max_seconds)


class TickResult(BaseModel):
    dispatched: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    """Due reports not started because a previous run is still going."""
