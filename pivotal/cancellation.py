"""CancellationToken — cooperative cancellation with an optional deadline."""

from __future__ import annotations

import threading
import time

from pivotal.errors import TimeoutError


class CancellationToken:
    """Signal checked by long-running work at safe boundaries.

    Parameters
    ----------
    timeout:
        Seconds from construction after which the token counts as
        cancelled.  ``None`` means no deadline.
    parent:
        Optional outer token; cancelling the parent cancels this one.
    """

    def __init__(
        self,
        timeout: float | None = None,
        parent: CancellationToken | None = None,
    ) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._parent = parent
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._reason:
            return self._reason
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason
        return "deadline elapsed" if self.cancelled else ""

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    def remaining(self) -> float | None:
        """Seconds until the nearest deadline, or None when there is none."""
        candidates = []
        if self._deadline is not None:
            candidates.append(max(0.0, self._deadline - time.monotonic()))
        if self._parent is not None:
            parent_left = self._parent.remaining()
            if parent_left is not None:
                candidates.append(parent_left)
        return min(candidates) if candidates else None

    def raise_if_cancelled(self, where: str = "") -> None:
        if self.cancelled:
            suffix = f" before {where}" if where else ""
            raise TimeoutError(f"Execution aborted{suffix}: {self.reason}")


def with_timeout(
    token: CancellationToken | None,
    timeout: float | None,
) -> CancellationToken | None:
    """Return a token honouring both *token* and a fresh *timeout*."""
    if timeout is None:
        return token
    return CancellationToken(timeout, parent=token)
