"""
Global capacity guard.

A single fixed-window counter shared by every identity. It bounds how many
generations reach the metered upstream API per window, independent of any
per-user quota logic.

States:
    Open:      count < limit
    Saturated: count >= limit until the window rolls over
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from src.config import usage_limits
from src.services.prometheus_metrics import global_capacity_used

logger = logging.getLogger(__name__)


class CapacityState(str, Enum):
    OPEN = "open"
    SATURATED = "saturated"


@dataclass(frozen=True)
class CapacitySnapshot:
    """Point-in-time view of the global window, used for response headers"""

    allowed: bool
    limit: int
    used: int
    remaining: int
    window_start: float
    reset_at: float

    @property
    def state(self) -> CapacityState:
        return CapacityState.OPEN if self.used < self.limit else CapacityState.SATURATED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "resetAt": int(self.reset_at),
        }


class GlobalCapacityGuard:
    """
    Fixed-window global counter.

    All state lives on the instance behind an asyncio.Lock. The clock is
    injectable so tests can roll the window without sleeping.
    """

    def __init__(
        self,
        limit: int = usage_limits.GLOBAL_GENERATION_LIMIT,
        window_seconds: int = usage_limits.GLOBAL_GENERATION_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._count = 0
        self._window_start = clock()
        self._lock = asyncio.Lock()

    def _roll_window(self, now: float) -> None:
        if now - self._window_start >= self.window_seconds:
            if self._count >= self.limit:
                logger.info("Global capacity window rolled over, guard open again")
            self._count = 0
            # Align to the window grid so the reset time stays predictable
            elapsed_windows = int((now - self._window_start) // self.window_seconds)
            self._window_start += elapsed_windows * self.window_seconds

    def _snapshot(self, allowed: bool) -> CapacitySnapshot:
        return CapacitySnapshot(
            allowed=allowed,
            limit=self.limit,
            used=self._count,
            remaining=max(0, self.limit - self._count),
            window_start=self._window_start,
            reset_at=self._window_start + self.window_seconds,
        )

    async def try_acquire(self) -> CapacitySnapshot:
        """
        Take one slot from the current window.

        Returns a snapshot with allowed=False, without consuming anything,
        when the window is saturated.
        """
        async with self._lock:
            self._roll_window(self._clock())
            if self._count >= self.limit:
                return self._snapshot(allowed=False)

            self._count += 1
            global_capacity_used.set(self._count)
            if self._count == self.limit:
                logger.warning(f"Global capacity saturated: {self._count}/{self.limit} this window")
            return self._snapshot(allowed=True)

    async def release(self, window_start: float) -> None:
        """
        Give back a slot taken in the window starting at ``window_start``.

        Used when a later guard denies the request before any upstream cost
        was incurred. A release for an already-rolled window is ignored.
        """
        async with self._lock:
            self._roll_window(self._clock())
            if self._window_start == window_start and self._count > 0:
                self._count -= 1
                global_capacity_used.set(self._count)

    async def snapshot(self) -> CapacitySnapshot:
        async with self._lock:
            self._roll_window(self._clock())
            return self._snapshot(allowed=self._count < self.limit)

    async def reset(self) -> None:
        async with self._lock:
            self._count = 0
            self._window_start = self._clock()
            global_capacity_used.set(0)
