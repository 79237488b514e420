import asyncio
import time
from typing import Callable, Optional


class MinIntervalLimiter:
    """Enforce a minimum delay between consecutive calls to one provider."""

    def __init__(self, min_interval_s: float, clock: Optional[Callable[[], float]] = None):
        self.min_interval_s = max(0.0, float(min_interval_s))
        self._clock = clock or time.monotonic
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                wait = self.min_interval_s - (self._clock() - self._last_call)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_call = self._clock()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False
