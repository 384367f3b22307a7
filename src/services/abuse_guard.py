"""
Sliding-window per-IP limiters.

SuspiciousActivityGuard catches scripted abuse that rotates identities but
not source addresses. It runs before any identity-specific quota is charged.
The same limiter type also protects the admin login endpoint.
"""

import asyncio
import logging
import math
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass

from src.config import usage_limits
from src.utils.ip_utils import mask_ip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlidingWindowResult:
    """Result of recording one attempt"""

    allowed: bool
    count: int
    remaining: int
    retry_after: int | None = None


class SlidingWindowLimiter:
    """
    Per-key sliding window over request timestamps.

    Every call to ``hit`` records an attempt, including attempts that end up
    denied. Keys idle for longer than ``retention_seconds`` are evicted on
    the next write; keys are kept in last-seen order so eviction only ever
    looks at the front of the map.
    """

    def __init__(
        self,
        threshold: int,
        window_seconds: float,
        retention_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
        name: str = "sliding_window",
    ):
        if threshold <= 0 or window_seconds <= 0:
            raise ValueError("threshold and window_seconds must be positive")
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.retention_seconds = max(retention_seconds or window_seconds, window_seconds)
        self.name = name
        self._clock = clock
        self._windows: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = asyncio.Lock()

    def _evict_idle(self, now: float) -> None:
        horizon = now - self.retention_seconds
        while self._windows:
            key, window = next(iter(self._windows.items()))
            if window and window[-1] >= horizon:
                break
            del self._windows[key]

    async def hit(self, key: str) -> SlidingWindowResult:
        """
        Record an attempt for ``key`` and evaluate the trailing window.

        The attempt is denied when the number of attempts inside the window,
        this one included, exceeds the threshold.
        """
        async with self._lock:
            now = self._clock()
            window = self._windows.pop(key, None)
            if window is None:
                # Only the newest threshold+1 entries can affect the decision
                window = deque(maxlen=self.threshold + 1)

            cutoff = now - self.window_seconds
            while window and window[0] <= cutoff:
                window.popleft()
            window.append(now)

            self._windows[key] = window
            self._evict_idle(now)

            count = len(window)
            if count > self.threshold:
                retry_after = max(1, math.ceil(window[0] + self.window_seconds - now))
                return SlidingWindowResult(
                    allowed=False, count=count, remaining=0, retry_after=retry_after
                )
            return SlidingWindowResult(
                allowed=True, count=count, remaining=self.threshold - count
            )

    async def tracked_keys(self) -> int:
        async with self._lock:
            self._evict_idle(self._clock())
            return len(self._windows)

    async def reset(self, key: str | None = None) -> None:
        async with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


class SuspiciousActivityGuard(SlidingWindowLimiter):
    """Identity-agnostic per-IP abuse detector for generation requests"""

    def __init__(
        self,
        threshold: int = usage_limits.ABUSE_REQUEST_THRESHOLD,
        window_seconds: float = usage_limits.ABUSE_WINDOW_SECONDS,
        retention_seconds: float = usage_limits.ABUSE_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(
            threshold,
            window_seconds,
            retention_seconds=retention_seconds,
            clock=clock,
            name="suspicious_activity",
        )

    async def check(self, source_ip: str) -> SlidingWindowResult:
        result = await self.hit(source_ip)
        if not result.allowed:
            logger.warning(
                f"🛡️ Suspicious activity from {mask_ip(source_ip)}: "
                f"{result.count} generation attempts in {int(self.window_seconds)}s"
            )
        return result


def admin_login_limiter(clock: Callable[[], float] = time.time) -> SlidingWindowLimiter:
    """Brute-force limiter for the admin login endpoint"""
    return SlidingWindowLimiter(
        usage_limits.ADMIN_LOGIN_ATTEMPTS,
        usage_limits.ADMIN_LOGIN_WINDOW_SECONDS,
        clock=clock,
        name="admin_login",
    )
