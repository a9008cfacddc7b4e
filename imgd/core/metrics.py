"""
In-memory upload counters.

One UploadMetrics instance lives on the process-scoped AppState and is shared
by the admission controller (limited) and the ingestion pipeline (ok/fail).
"""

from __future__ import annotations

import threading
from typing import TypedDict


class MetricCounts(TypedDict):
    """Type for metric counts dictionary."""

    upload_ok: int
    upload_fail: int
    upload_limited: int


class UploadMetrics:
    """Thread-safe counters for upload outcomes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ok = 0
        self._fail = 0
        self._limited = 0

    def increment_ok(self) -> None:
        with self._lock:
            self._ok += 1

    def increment_fail(self) -> None:
        with self._lock:
            self._fail += 1

    def increment_limited(self) -> None:
        """Count a request rejected by an admission gate."""
        with self._lock:
            self._limited += 1

    def snapshot(self) -> MetricCounts:
        """Return a consistent copy of all counters."""
        with self._lock:
            return MetricCounts(
                upload_ok=self._ok,
                upload_fail=self._fail,
                upload_limited=self._limited,
            )
