from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from core.config import RateRule

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }

    def retry_after(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))


class RateLimitBackend(Protocol):
    def hit(self, key: str, window_seconds: int, now: float) -> RateLimitWindow:
        """Count one request for ``key`` and return the window it landed in."""


class InMemoryRateLimitBackend:
    """Process-local counters. Lost on restart; one instance per process only."""

    def __init__(self, sweep_interval: float = 300.0) -> None:
        self.sweep_interval = sweep_interval
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()
        self._next_sweep = 0.0

    def hit(self, key: str, window_seconds: int, now: float) -> RateLimitWindow:
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = RateLimitWindow(count=1, reset_at=now + window_seconds)
                self._windows[key] = window
            else:
                window.count += 1
            return RateLimitWindow(count=window.count, reset_at=window.reset_at)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self.sweep_interval


class FixedWindowLimiter:
    """Counts requests per key in wall-clock windows.

    Errors inside the backend never block a request: the limiter logs and allows.
    """

    def __init__(self, backend: Optional[RateLimitBackend] = None, clock: Clock = time.time) -> None:
        self.backend = backend or InMemoryRateLimitBackend()
        self.clock = clock

    def check(self, key: str, rule: RateRule) -> RateLimitResult:
        now = self.clock()
        try:
            window = self.backend.hit(key, rule.window_seconds, now)
        except Exception:
            logger.exception("rate limit check failed for %s, allowing request", key)
            return RateLimitResult(
                allowed=True,
                limit=rule.requests,
                remaining=rule.requests,
                reset_at=now + rule.window_seconds,
            )
        return RateLimitResult(
            allowed=window.count <= rule.requests,
            limit=rule.requests,
            remaining=max(0, rule.requests - window.count),
            reset_at=window.reset_at,
        )


def rate_limit_key(user_id: Optional[str], client_ip: Optional[str]) -> str:
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_ip or 'unknown'}"
