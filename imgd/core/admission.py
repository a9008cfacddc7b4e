"""
imgd - Admission Control

Two gates run before an upload is allowed into the ingestion pipeline:

- Rate gate: in-memory sliding window per key. Every request is checked
  against its client address key with the global per-minute limit; if the
  authenticated identity carries its own limit, its identity key is checked
  as well. Identity limits add to the address limit, they never replace it.
- Concurrency gate: a fixed pool of permits. Acquisition never waits; when
  the pool is empty the request is rejected.

Both gates raise the same TooManyRequestsError so a client cannot tell which
control is active. State is process-local and resets on restart.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Iterator

from .errors import TooManyRequestsError
from .metrics import UploadMetrics
from .security import Identity

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """
    Sliding window limiter keyed by arbitrary strings.

    Timestamps for a key are pruned lazily, on the next check of that key.
    Keys with no hit inside the window are dropped, either on their own
    check or by a sweep over all keys that runs at most once per window.
    """

    def __init__(
        self,
        window_seconds: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        """Number of keys currently tracked."""
        with self._lock:
            return len(self._hits)

    def _prune(self, hits: deque[float], now: float) -> None:
        while hits and now - hits[0] > self.window_seconds:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep <= self.window_seconds:
            return
        self._last_sweep = now
        for key in [k for k, hits in self._hits.items() if now - hits[-1] > self.window_seconds]:
            del self._hits[key]

    def check(self, key: str, limit: int) -> bool:
        """Record a hit for `key` and return False if it is over `limit`."""
        with self._lock:
            now = self._clock()
            self._sweep(now)

            hits = self._hits.get(key)
            if hits is not None:
                self._prune(hits, now)
                if not hits:
                    del self._hits[key]
                    hits = None

            if len(hits or ()) >= limit:
                return False

            if hits is None:
                hits = self._hits[key] = deque()
            hits.append(now)
            return True


class ConcurrencyGate:
    """Counting permit pool with non-blocking acquisition."""

    def __init__(self, limit: int):
        self.limit = limit
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def try_acquire(self) -> bool:
        with self._lock:
            if self._in_flight >= self.limit:
                return False
            self._in_flight += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._in_flight == 0:
                raise RuntimeError("ConcurrencyGate released more times than acquired")
            self._in_flight -= 1


class AdmissionController:
    """Applies the rate and concurrency gates to one upload request."""

    def __init__(
        self,
        *,
        rate_limit_per_minute: int,
        max_concurrent_uploads: int,
        metrics: UploadMetrics,
        limiter: SlidingWindowRateLimiter | None = None,
    ):
        self.rate_limit_per_minute = rate_limit_per_minute
        self.limiter = limiter if limiter is not None else SlidingWindowRateLimiter()
        self.gate = ConcurrencyGate(max_concurrent_uploads)
        self.metrics = metrics

    def _reject(self, gate: str, client_ip: str, identity: Identity) -> None:
        self.metrics.increment_limited()
        logger.warning(
            f"Upload limited by {gate} gate",
            extra={"client_ip": client_ip, "token_id": identity.token_id, "reason": gate},
        )
        raise TooManyRequestsError(gate)

    @contextmanager
    def admit(self, client_ip: str, identity: Identity) -> Iterator[None]:
        """
        Hold an admission for the duration of the block.

        Raises:
            TooManyRequestsError: If any gate rejects the request
        """
        if not self.limiter.check(f"ip:{client_ip}", self.rate_limit_per_minute):
            self._reject("ip_rate", client_ip, identity)

        if identity.rate_limit_per_minute is not None:
            if not self.limiter.check(f"token:{identity.token_id}", identity.rate_limit_per_minute):
                self._reject("token_rate", client_ip, identity)

        if not self.gate.try_acquire():
            self._reject("concurrency", client_ip, identity)

        try:
            yield
        finally:
            self.gate.release()
