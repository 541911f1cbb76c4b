"""Delivery sinks — where scheduled report results are sent."""

from __future__ import annotations

import abc
import logging
from typing import Any

import requests

from pivotal.reports.models import ReportResult

logger = logging.getLogger(__name__)


class DeliverySink(abc.ABC):
    """Abstract destination for scheduled report output."""

    @abc.abstractmethod
    def deliver(self, result: ReportResult, recipients: list[str]) -> bool:
        """Send *result* to *recipients*.

        Returns True if the delivery was accepted.
        """

    def is_available(self) -> bool:
        """Return True if the sink is ready to send."""
        return True


class LogDeliverySink(DeliverySink):
    """Always-available sink that logs deliveries and keeps them in memory."""

    def __init__(self) -> None:
        self._log: list[dict[str, Any]] = []

    def deliver(self, result: ReportResult, recipients: list[str]) -> bool:
        self._log.append(_payload(result, recipients))
        logger.info(
            "Delivered report %s (%s, %d rows) to %s",
            result.report_id, result.format.value, result.row_count, ", ".join(recipients),
        )
        return True

    @property
    def log(self) -> list[dict[str, Any]]:
        """Access the in-memory delivery log for testing."""
        return list(self._log)


class WebhookDeliverySink(DeliverySink):
    """POST each delivery as JSON to a webhook URL."""

    def __init__(self, webhook_url: str | None = None, timeout: float = 10) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout

    def is_available(self) -> bool:
        return bool(self._webhook_url)

    def deliver(self, result: ReportResult, recipients: list[str]) -> bool:
        if not self.is_available():
            logger.warning("Webhook sink has no URL, skipping delivery of %s", result.report_id)
            return False

        try:
            resp = requests.post(self._webhook_url, json=_payload(result, recipients), timeout=self._timeout)
        except requests.RequestException as exc:
            logger.warning("Webhook delivery of %s failed: %s", result.report_id, exc)
            return False
        if resp.status_code not in (200, 201, 202, 204):
            logger.warning(
                "Webhook delivery of %s rejected with HTTP %d", result.report_id, resp.status_code
            )
            return False
        return True


def _payload(result: ReportResult, recipients: list[str]) -> dict[str, Any]:
    return {
        "report_id": result.report_id,
        "report_name": result.report_name,
        "format": result.format.value,
        "row_count": result.row_count,
        "generated_at": result.generated_at.isoformat(),
        "recipients": list(recipients),
        "content": result.content,
    }
