"""Sliding window request budget for gateway callers.

Each bearer token gets its own 60 second window. The limiter never waits:
a request over budget is refused immediately so the caller can fall back.
"""

import hashlib
import time
from collections import deque
from typing import Callable, Deque, Dict

WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """Per-key requests-per-minute limiter."""

    def __init__(
        self,
        requests_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    @staticmethod
    def _key(token: str) -> str:
        # Tokens are hashed so the raw credential is never held as a dict key.
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def try_acquire(self, token: str) -> bool:
        """Record a request for ``token`` if it fits in the current window.

        Returns:
            True if the request is allowed, False if the budget is spent
        """
        if self.requests_per_minute <= 0:
            return True

        now = self._clock()
        self._sweep(now)
        window = self._windows.setdefault(self._key(token), deque())
        while window and window[0] <= now - WINDOW_SECONDS:
            window.popleft()

        if len(window) >= self.requests_per_minute:
            return False

        window.append(now)
        return True

    def _sweep(self, now: float) -> None:
        """Forget tokens with no request left in the window, at most once per window."""
        if now - self._last_sweep < WINDOW_SECONDS:
            return
        self._last_sweep = now
        cutoff = now - WINDOW_SECONDS
        stale = [
            key
            for key, window in self._windows.items()
            if not window or window[-1] <= cutoff
        ]
        for key in stale:
            del self._windows[key]

    def retry_after(self, token: str) -> float:
        """Seconds until the oldest request for ``token`` leaves the window."""
        window = self._windows.get(self._key(token))
        if not window:
            return 0.0
        return max(0.0, window[0] + WINDOW_SECONDS - self._clock())
