"""
Time source of the scheduler, injectable so budgets can be tested without waiting.
"""

import asyncio
import time
from typing import List


class Clock:
    """Monotonic time in seconds plus an awaitable sleep."""

    def now(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


class MockClock(Clock):
    """Virtual clock: sleeping advances the time instantly and is recorded."""

    def __init__(self, start: float = 0.0):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        # still yield to the loop like a real sleep would
        await asyncio.sleep(0)
