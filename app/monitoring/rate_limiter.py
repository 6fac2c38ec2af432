"""
Global sliding-window limiter for job dispatch.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable


class SlidingWindowRateLimiter:
    """
    Allows at most ``max_events`` dispatches in any trailing ``window_seconds``.

    ``max_events <= 0`` disables limiting.
    """

    def __init__(
        self,
        *,
        max_events: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_events = max_events
        self._window_seconds = max(0.001, window_seconds)
        self._clock = clock
        self._events: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._max_events > 0

    def _prune(self, now: float) -> None:
        horizon = now - self._window_seconds
        while self._events and self._events[0] <= horizon:
            self._events.popleft()

    def try_acquire(self) -> float:
        """
        Take one permit if available.

        Returns 0.0 on success, otherwise the seconds until a permit frees up.
        """

        if not self.enabled:
            return 0.0
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._events) < self._max_events:
                self._events.append(now)
                return 0.0
            return max(0.0, self._events[0] + self._window_seconds - now)

    def refund(self) -> None:
        """
        Return the most recent permit, used when a claimed dispatch did not happen.
        """

        if not self.enabled:
            return
        with self._lock:
            if self._events:
                self._events.pop()

    def in_window(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._events)
