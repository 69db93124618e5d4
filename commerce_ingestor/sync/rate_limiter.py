"""Sliding-window admission control for outbound provider calls."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable


class SlidingWindowLimiter:
    """Admit at most ``max_requests`` within any ``window_seconds`` span.

    Each admission is timestamped; a caller that finds the window full sleeps
    until the oldest admission ages out. ``acquire`` returns the seconds waited.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._admitted: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window_seconds:
            self._admitted.popleft()

    @property
    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._admitted)

    async def acquire(self) -> float:
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._admitted) < self.max_requests:
                    self._admitted.append(now)
                    return waited
                delay = self._admitted[0] + self.window_seconds - now
                await self._sleep(delay)
                waited += delay
