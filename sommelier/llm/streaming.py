from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from typing import Any

import httpx

from sommelier.errors import ProtocolError, StreamInterrupted, VoicePipelineError
from sommelier.llm.types import ChatMessage, ConversationId, StreamingEvent
from sommelier.service import raise_for_service_status
from sommelier.telemetry.logging import get_logger
from sommelier.telemetry.tracing import get_tracer

EVENT_STREAM = "text/event-stream"


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the joined ``data`` field of each server-sent event frame."""
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data_lines.append(value[1:] if value.startswith(" ") else value)
    if data_lines:
        yield "\n".join(data_lines)


class StreamingChatClient:
    """Consumes the gateway's incremental chat stream, one stream at a time.

    ``stream`` is the primary interface: an async iterator of events that ends
    after the first terminal event. Broken connections and malformed frames
    are reported as a terminal ``error`` event; the text received so far stays
    available through ``buffer``. HTTP failures before the stream opens raise
    ``RateLimited`` or ``ServiceError``.

    ``start_streaming`` runs the same loop in a background task and reports
    through the ``on_event``/``on_complete``/``on_error`` callbacks.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        path: str = "/api/chat",
        on_event: Callable[[StreamingEvent], Any] | None = None,
        on_complete: Callable[[str, ConversationId | None], Any] | None = None,
        on_error: Callable[[str, str], Any] | None = None,
    ) -> None:
        self._client = client
        self._path = path
        self.on_event = on_event
        self.on_complete = on_complete
        self.on_error = on_error
        self._buffer = ""
        self._generation = 0
        self._response: httpx.Response | None = None
        self._task: asyncio.Task[None] | None = None
        self._logger = get_logger(__name__)
        self._tracer = get_tracer(__name__)

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def active(self) -> bool:
        return self._response is not None or (self._task is not None and not self._task.done())

    async def stream(
        self,
        messages: Sequence[ChatMessage | Mapping[str, str]],
        conversation_id: ConversationId | None = None,
        wine_context: Mapping[str, Any] | None = None,
        text_only: bool = False,
    ) -> AsyncIterator[StreamingEvent]:
        await self._close_response()
        self._generation += 1
        generation = self._generation
        self._buffer = ""
        payload: dict[str, Any] = {
            "messages": [m.to_dict() if isinstance(m, ChatMessage) else dict(m) for m in messages],
            "optimize_for_speed": True,
        }
        if conversation_id is not None:
            payload["conversationId"] = conversation_id
        if wine_context is not None:
            payload["wineContext"] = dict(wine_context)
        if text_only:
            payload["text_only"] = True

        self._logger.info("stream.request", messages=len(payload["messages"]), conversation_id=conversation_id)
        with self._tracer.start_as_current_span("chat.stream"):
            try:
                async with self._client.stream(
                    "POST", self._path, json=payload, headers={"Accept": EVENT_STREAM}
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        raise_for_service_status(response)
                    self._response = response
                    if not response.headers.get("content-type", "").startswith(EVENT_STREAM):
                        await response.aread()
                        for event in self._from_json(response):
                            yield event
                        return
                    async for event in self._events(response):
                        if generation != self._generation:
                            return
                        yield event
                        if event.terminal:
                            return
                    if generation == self._generation:
                        yield self._error_event(StreamInterrupted(partial=self._buffer))
            except (httpx.TransportError, httpx.StreamError) as exc:
                if generation != self._generation:
                    return
                self._logger.warning("stream.transport_error", error=str(exc), partial_chars=len(self._buffer))
                yield self._error_event(StreamInterrupted(partial=self._buffer))
            finally:
                if generation == self._generation:
                    self._response = None

    async def start_streaming(
        self,
        messages: Sequence[ChatMessage | Mapping[str, str]],
        conversation_id: ConversationId | None = None,
        wine_context: Mapping[str, Any] | None = None,
        text_only: bool = False,
    ) -> None:
        await self.stop()
        self._task = asyncio.create_task(
            self._consume(messages, conversation_id, wine_context, text_only), name="chat-stream"
        )

    async def stop(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._close_response()

    async def _consume(
        self,
        messages: Sequence[ChatMessage | Mapping[str, str]],
        conversation_id: ConversationId | None,
        wine_context: Mapping[str, Any] | None,
        text_only: bool,
    ) -> None:
        try:
            async for event in self.stream(messages, conversation_id, wine_context, text_only):
                if event.type == "complete":
                    await _invoke(self.on_complete, self._buffer, event.conversation_id)
                elif event.type == "error":
                    await _invoke(self.on_error, event.message or "", self._buffer)
                else:
                    await _invoke(self.on_event, event)
        except VoicePipelineError as exc:
            await _invoke(self.on_error, exc.message, self._buffer)

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamingEvent]:
        async for data in iter_sse_data(response):
            try:
                event = StreamingEvent.from_envelope(json.loads(data))
            except (ValueError, ProtocolError) as exc:
                self._logger.warning("stream.malformed_envelope", error=str(exc))
                yield self._error_event(ProtocolError())
                return
            if event.content and event.type in ("first_token", "token"):
                self._buffer += event.content
            if event.type == "complete":
                self._logger.info("stream.complete", chars=len(self._buffer), conversation_id=event.conversation_id)
            elif event.type == "error":
                self._logger.warning("stream.error", message=event.message, partial_chars=len(self._buffer))
            yield event

    def _from_json(self, response: httpx.Response) -> list[StreamingEvent]:
        try:
            body = response.json()
            content = body["message"]["content"]
        except (ValueError, KeyError, TypeError):
            return [self._error_event(ProtocolError())]
        self._buffer = str(content)
        return [
            StreamingEvent(type="first_token", content=self._buffer, start_tts=bool(body.get("start_tts", True))),
            StreamingEvent(type="complete", conversation_id=body.get("conversationId")),
        ]

    def _error_event(self, error: VoicePipelineError) -> StreamingEvent:
        self._logger.warning("stream.error", message=error.message, partial_chars=len(self._buffer))
        return StreamingEvent(type="error", message=error.message)

    async def _close_response(self) -> None:
        response, self._response = self._response, None
        if response is not None:
            await response.aclose()


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


__all__ = ["StreamingChatClient", "iter_sse_data", "EVENT_STREAM"]
