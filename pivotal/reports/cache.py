"""ResultCache — bounded, time-limited store of report results."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable

from pivotal.reports.models import ReportResult

logger = logging.getLogger(__name__)


def cache_key(report_id: str, parameters: dict[str, Any], format: str, scope: str) -> str:
    """SHA-256 over the canonical JSON of the identifying tuple.

    Key order of *parameters* does not matter.
    """
    canonical = json.dumps(
        {"report": report_id, "params": parameters, "format": format, "scope": scope},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return f"{report_id}:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


class ResultCache:
    """Thread-safe TTL + LRU cache keyed by :func:`cache_key`.

    Parameters
    ----------
    ttl_seconds:
        Lifetime of an entry.  ``0`` disables caching.
    max_entries:
        Size bound; the least recently used entry is evicted first.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[float, ReportResult]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> ReportResult | None:
        """Return the live entry for *key*, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return result

    def put(self, key: str, result: ReportResult) -> None:
        """Store *result*; a concurrent writer for the same key wins last."""
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, result)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Evicted cached result %s", evicted)

    def invalidate(self, prefix: str = "") -> int:
        """Drop entries whose key starts with *prefix*; returns the count."""
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.debug("Invalidated %d cached result(s) for prefix %r", len(doomed), prefix)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
