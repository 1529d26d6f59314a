from __future__ import annotations

import asyncio


class TurnCancelled(Exception):
    """Raised when work continues on behalf of a cancelled or superseded turn."""


class CancellationToken:
    def __init__(self, turn_id: str) -> None:
        self.turn_id = turn_id
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


__all__ = ["CancellationToken", "TurnCancelled"]
