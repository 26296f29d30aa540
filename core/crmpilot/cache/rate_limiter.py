"""
Multi-window request counters.

Each user gets a minute, hour and day counter, and so does the process as
a whole. A request is rejected, never queued, once any applicable counter
is at its ceiling. Counters reset lazily on the first check after their
window ends.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from crmpilot.config import RateLimits
from crmpilot.utils.errors import RateLimitExceeded
from crmpilot.utils.logging import logger

GLOBAL_SCOPE = "global"


class RateWindow(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return {"minute": 60, "hour": 3600, "day": 86400}[self.value]


@dataclass
class WindowCounter:
    """Request count for one scope and window."""
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window counters per user and globally."""

    def __init__(
        self,
        limits: Optional[RateLimits] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = limits or RateLimits()
        self._clock = clock
        self._counters: dict[tuple[str, RateWindow], WindowCounter] = {}
        self.rejections = 0

    def _ceiling(self, scope: str, window: RateWindow) -> int:
        prefix = "global" if scope == GLOBAL_SCOPE else "user"
        return getattr(self.limits, f"{prefix}_per_{window.value}")

    def _counter(self, scope: str, window: RateWindow, now: float) -> WindowCounter:
        key = (scope, window)
        counter = self._counters.get(key)
        if counter is None or now >= counter.reset_at:
            counter = WindowCounter(count=0, reset_at=now + window.seconds)
            self._counters[key] = counter
        return counter

    def _scopes(self, user_id: Optional[str]) -> list[str]:
        scopes = [GLOBAL_SCOPE]
        if user_id:
            scopes.insert(0, f"user:{user_id}")
        return scopes

    def check(self, user_id: Optional[str] = None) -> Optional[tuple[str, RateWindow, float]]:
        """
        Find the first full counter without counting the request.

        Returns:
            (scope, window, seconds until reset) or None when allowed
        """
        now = self._clock()
        for scope in self._scopes(user_id):
            for window in RateWindow:
                counter = self._counter(scope, window, now)
                if counter.count >= self._ceiling(scope, window):
                    return scope, window, max(0.0, counter.reset_at - now)
        return None

    def acquire(self, user_id: Optional[str] = None) -> bool:
        """Count a request if every applicable window has room."""
        blocked = self.check(user_id)
        if blocked is not None:
            scope, window, retry_after = blocked
            self.rejections += 1
            logger.warning(
                f"Rate limit hit for {scope} ({window.value}), retry in {retry_after:.0f}s"
            )
            return False

        now = self._clock()
        for scope in self._scopes(user_id):
            for window in RateWindow:
                self._counter(scope, window, now).count += 1
        return True

    def require(self, user_id: Optional[str] = None) -> None:
        """Like acquire, but raise RateLimitExceeded on rejection."""
        blocked = self.check(user_id)
        if blocked is not None:
            self.acquire(user_id)  # records the rejection
            scope, window, retry_after = blocked
            raise RateLimitExceeded(scope, window.value, retry_after)
        self.acquire(user_id)

    def status(self, user_id: Optional[str] = None) -> dict:
        """Remaining capacity per window for a user and globally."""
        now = self._clock()
        result = {}
        for scope in self._scopes(user_id):
            windows = {}
            for window in RateWindow:
                counter = self._counter(scope, window, now)
                ceiling = self._ceiling(scope, window)
                windows[window.value] = {
                    "used": counter.count,
                    "limit": ceiling,
                    "remaining": max(0, ceiling - counter.count),
                    "reset_in": max(0.0, counter.reset_at - now),
                }
            result["global" if scope == GLOBAL_SCOPE else "user"] = windows
        return result

    def reset(self) -> None:
        self._counters.clear()
        self.rejections = 0
