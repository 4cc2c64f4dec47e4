"""Security layer — Per-client sliding window rate limiter.

In-memory rate limiter keyed by ``client_id``.  A request is admitted when
the client has made fewer than ``max_requests`` requests within the last
``window_seconds``; admitted requests are recorded, denied ones are not.

Clients whose newest request is older than two windows are swept from the
table.  The sweep runs from ``check`` at most once per window, so there is
no background timer to manage.

Usage::

    limiter = ClientRateLimiter(max_requests=100, window_seconds=60)
    limiter.check_or_raise("alice")
"""

from __future__ import annotations

import threading
import time

from sqlite_gateway.exceptions import RateLimitExceededError
from sqlite_gateway.logging import get_logger

log = get_logger(__name__)


class ClientRateLimiter:
    """Sliding-window rate limiter for tool calls."""

    def __init__(self, max_requests: int = 100, window_seconds: float = 60.0) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._timestamps: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.time()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window

    def check(self, client_id: str) -> bool:
        """Return True and record the request if *client_id* is within its limit."""
        now = time.time()
        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep_locked(now)
            timestamps = self._prune(client_id, now)
            if len(timestamps) >= self._max_requests:
                return False
            timestamps.append(now)
            return True

    def check_or_raise(self, client_id: str) -> None:
        """Check the limit; raise :class:`RateLimitExceededError` if exceeded."""
        if not self.check(client_id):
            log.warning("rate_limit_exceeded", client_id=client_id, limit=self._max_requests)
            raise RateLimitExceededError(
                client_id=client_id,
                limit=self._max_requests,
                window_seconds=self._window,
            )

    def get_remaining(self, client_id: str) -> int:
        """Requests *client_id* may still make in the current window."""
        now = time.time()
        with self._lock:
            used = len(self._prune(client_id, now))
        return max(0, self._max_requests - used)

    def reset(self, client_id: str | None = None) -> None:
        """Reset rate limit state.

        If *client_id* is provided, only that client is reset.
        Otherwise all clients are cleared.
        """
        with self._lock:
            if client_id is None:
                self._timestamps.clear()
            else:
                self._timestamps.pop(client_id, None)

    def sweep(self) -> int:
        """Drop idle clients; return how many were removed."""
        with self._lock:
            return self._sweep_locked(time.time())

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _prune(self, client_id: str, now: float) -> list[float]:
        """Drop timestamps outside the window; caller holds the lock."""
        cutoff = now - self._window
        timestamps = [t for t in self._timestamps.get(client_id, []) if t > cutoff]
        self._timestamps[client_id] = timestamps
        return timestamps

    def _sweep_locked(self, now: float) -> int:
        cutoff = now - 2 * self._window
        stale = [
            client_id
            for client_id, timestamps in self._timestamps.items()
            if not timestamps or timestamps[-1] <= cutoff
        ]
        for client_id in stale:
            del self._timestamps[client_id]
        self._last_sweep = now
        if stale:
            log.debug("rate_limiter_swept", removed=len(stale))
        return len(stale)
