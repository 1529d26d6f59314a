from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.events import (
    ASSISTANT_STATE,
    PLAY_AUDIO_RESPONSE,
    SUGGESTION_PLAYBACK_ENDED,
    SUGGESTION_PLAYBACK_STARTED,
    TRIGGER_VOICE_ASSISTANT,
    AudioBlob,
    State,
)
from sommelier.orchestrator.tasks import cancel_all, spawn
from sommelier.telemetry.logging import get_logger

# Events the page sends to the assistant; they are never echoed back.
INBOUND_EVENTS = frozenset(
    {TRIGGER_VOICE_ASSISTANT, PLAY_AUDIO_RESPONSE, SUGGESTION_PLAYBACK_STARTED, SUGGESTION_PLAYBACK_ENDED}
)


class UIEventBridge:
    """Mirrors bus events to websocket clients under their original event names.

    Clients may also send ``{"event": name, "detail": {...}}`` frames for the
    page-level events in ``INBOUND_EVENTS``; those are published on the bus.
    """

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus
        self._clients: set[WebSocket] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._router = APIRouter()
        self._router.add_api_websocket_route("/ws/state", self._websocket_handler)
        self._lock = asyncio.Lock()
        self._logger = get_logger(__name__)
        self._unsubscribe = bus.subscribe_all(self._forward) if bus is not None else None

    @property
    def router(self) -> APIRouter:
        return self._router

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def _websocket_handler(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        self._logger.info("ui.client.connected", count=len(self._clients))
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    self._logger.warning("ui.client.invalid_json", size=len(raw))
                    continue
                self._dispatch(message)
        except WebSocketDisconnect:
            async with self._lock:
                self._clients.discard(websocket)
            self._logger.info("ui.client.disconnected", count=len(self._clients))

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            self._logger.warning("ui.client.invalid_frame", kind=type(message).__name__)
            return
        name = message.get("event")
        if name not in INBOUND_EVENTS:
            self._logger.warning("ui.client.unknown_event", event_name=name)
            return
        detail = message.get("detail")
        if not isinstance(detail, dict):
            detail = {}
        if self._bus is None:
            self._logger.warning("ui.client.no_bus", event_name=name)
            return
        self._logger.info("ui.client.event", event_name=name)
        # Handlers such as opening the assistant run for a while; keep reading frames meanwhile.
        spawn(self._tasks, self._bus.publish(name, detail), f"ui-{name}", self._logger)

    async def publish_state(self, state: State, payload: dict[str, Any] | None = None) -> None:
        await self.broadcast({"event": ASSISTANT_STATE, "state": state, "payload": payload or {}})

    async def broadcast(self, message: dict[str, Any]) -> None:
        async with self._lock:
            send_tasks = [client.send_json(message) for client in self._clients]
        if send_tasks:
            await asyncio.gather(*send_tasks, return_exceptions=True)

    async def _forward(self, name: str, detail: dict[str, Any]) -> None:
        if name in INBOUND_EVENTS:
            return
        if name == ASSISTANT_STATE:
            await self.publish_state(detail.get("state", "IDLE"), detail.get("payload"))
            return
        await self.broadcast({"event": name, "detail": _jsonable(detail)})

    async def aclose(self) -> None:
        self.close()
        await cancel_all(self._tasks)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


def _jsonable(detail: dict[str, Any]) -> dict[str, Any]:
    return {
        key: {"mime_type": value.mime_type, "size": value.size} if isinstance(value, AudioBlob) else value
        for key, value in detail.items()
    }


__all__ = ["INBOUND_EVENTS", "UIEventBridge"]
