from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

from sommelier.telemetry.logging import get_logger

Handler = Callable[[dict[str, Any]], Union[Awaitable[None], None]]
WildcardHandler = Callable[[str, dict[str, Any]], Union[Awaitable[None], None]]


class EventBus:
    """In-process publish/subscribe channel for named events with dict payloads."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._wildcard: list[WildcardHandler] = []
        self._logger = get_logger(__name__)

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        self._handlers[name].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(name)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: WildcardHandler) -> Callable[[], None]:
        self._wildcard.append(handler)

        def unsubscribe() -> None:
            if handler in self._wildcard:
                self._wildcard.remove(handler)

        return unsubscribe

    async def publish(self, name: str, detail: dict[str, Any] | None = None) -> None:
        payload = dict(detail or {})
        for handler in list(self._handlers.get(name, ())):
            await self._call(name, handler, payload)
        for wildcard in list(self._wildcard):
            await self._call(name, wildcard, name, payload)

    async def _call(self, name: str, handler: Callable[..., Any], *args: Any) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._logger.error("bus.handler.failed", event=name, error=str(exc))


__all__ = ["EventBus", "Handler", "WildcardHandler"]
