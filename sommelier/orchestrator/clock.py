from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator


class Clock:
    """Wall and monotonic time plus the fixed-interval timers used by the pipeline."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def monotonic_ms(self) -> float:
        return time.monotonic() * 1000.0

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def ticks(self, interval_ms: int) -> AsyncIterator[float]:
        """Yield the monotonic time every `interval_ms` until the consumer stops iterating."""
        if interval_ms <= 0:
            raise ValueError("Interval must be positive")
        while True:
            await self.sleep(interval_ms / 1000)
            yield self.monotonic_ms()


CLOCK = Clock()


__all__ = ["Clock", "CLOCK"]
