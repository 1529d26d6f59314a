from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from sommelier.errors import ProtocolError, RateLimited, StreamInterrupted
from sommelier.llm.streaming import StreamingChatClient
from sommelier.llm.types import ChatMessage, StreamingEvent

SSE_HEADERS = {"content-type": "text/event-stream"}


def sse(*envelopes: dict) -> bytes:
    return "".join(f"data: {json.dumps(envelope)}\n\n" for envelope in envelopes).encode()


class BrokenStream(httpx.AsyncByteStream):
    def __init__(self, body: bytes) -> None:
        self._body = body

    async def __aiter__(self):
        yield self._body
        raise httpx.ReadError("connection reset by peer")


class HeldStream(httpx.AsyncByteStream):
    """Sends one chunk, then stays open until the response is closed."""

    def __init__(self, body: bytes) -> None:
        self._body = body
        self.closed = False
        self._released = asyncio.Event()

    async def __aiter__(self):
        yield self._body
        await self._released.wait()

    async def aclose(self) -> None:
        self.closed = True
        self._released.set()


def chat_client(handler) -> tuple[httpx.AsyncClient, StreamingChatClient]:
    client = httpx.AsyncClient(base_url="http://gateway.test", transport=httpx.MockTransport(handler))
    return client, StreamingChatClient(client)


async def collect(chat: StreamingChatClient, **kwargs) -> list[StreamingEvent]:
    messages = kwargs.pop("messages", [ChatMessage("user", "Tell me about this wine")])
    return [event async for event in chat.stream(messages, **kwargs)]


@pytest.mark.anyio("asyncio")
async def test_events_arrive_in_order_and_accumulate() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["accept"] = request.headers["accept"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=sse(
                {"type": "first_token", "content": "This ", "start_tts": True},
                {"type": "token", "content": "Merlot "},
                {"type": "token", "content": "is plush."},
                {"type": "complete", "conversationId": 7},
            ),
        )

    client, chat = chat_client(handler)
    async with client:
        events = await collect(chat, conversation_id=7, wine_context={"name": "Estate Merlot", "vintage": 2019})

    assert [event.type for event in events] == ["first_token", "token", "token", "complete"]
    assert events[0].start_tts is True
    assert events[-1].conversation_id == 7
    assert chat.buffer == "This Merlot is plush."
    assert captured["accept"] == "text/event-stream"
    assert captured["body"]["optimize_for_speed"] is True
    assert captured["body"]["conversationId"] == 7
    assert captured["body"]["wineContext"] == {"name": "Estate Merlot", "vintage": 2019}
    assert captured["body"]["messages"] == [{"role": "user", "content": "Tell me about this wine"}]
    assert not chat.active


@pytest.mark.anyio("asyncio")
async def test_nothing_is_delivered_after_terminal_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=sse(
                {"type": "first_token", "content": "Hi", "start_tts": False},
                {"type": "complete", "conversationId": "abc"},
                {"type": "token", "content": "late"},
            ),
        )

    client, chat = chat_client(handler)
    async with client:
        events = await collect(chat)
    assert [event.type for event in events] == ["first_token", "complete"]
    assert chat.buffer == "Hi"


@pytest.mark.anyio("asyncio")
async def test_broken_connection_keeps_partial_text() -> None:
    body = sse({"type": "first_token", "content": "The tannins ", "start_tts": True}, {"type": "token", "content": "are"})

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=SSE_HEADERS, stream=BrokenStream(body))

    client, chat = chat_client(handler)
    async with client:
        events = await collect(chat)
    assert [event.type for event in events] == ["first_token", "token", "error"]
    assert events[-1].message == StreamInterrupted.user_message
    assert chat.buffer == "The tannins are"


@pytest.mark.anyio("asyncio")
async def test_stream_ending_without_terminal_event_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=SSE_HEADERS, content=sse({"type": "first_token", "content": "Half"}))

    client, chat = chat_client(handler)
    async with client:
        events = await collect(chat)
    assert events[-1].type == "error"
    assert chat.buffer == "Half"


@pytest.mark.anyio("asyncio")
async def test_malformed_envelope_is_a_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = sse({"type": "first_token", "content": "Ok"}) + b"data: {not json\n\n"
        return httpx.Response(200, headers=SSE_HEADERS, content=body)

    client, chat = chat_client(handler)
    async with client:
        events = await collect(chat)
    assert events[-1].type == "error"
    assert events[-1].message == ProtocolError.user_message
    assert chat.buffer == "Ok"


@pytest.mark.anyio("asyncio")
async def test_server_error_envelope_is_terminal() -> None:
    message = "Streaming failed, falling back to regular response"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=sse({"type": "first_token", "content": "Bold"}, {"type": "error", "message": message}),
        )

    client, chat = chat_client(handler)
    async with client:
        events = await collect(chat)
    assert events[-1] == StreamingEvent(type="error", message=message)


@pytest.mark.anyio("asyncio")
async def test_json_reply_is_delivered_as_one_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"message": {"role": "assistant", "content": "A dry Riesling."}, "conversationId": 3},
        )

    client, chat = chat_client(handler)
    async with client:
        events = await collect(chat)
    assert [event.type for event in events] == ["first_token", "complete"]
    assert events[0].content == "A dry Riesling."
    assert events[1].conversation_id == 3


@pytest.mark.anyio("asyncio")
async def test_rate_limit_raises_before_stream_opens() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "OpenAI rate limit exceeded"})

    client, chat = chat_client(handler)
    async with client:
        with pytest.raises(RateLimited):
            await collect(chat)


@pytest.mark.anyio("asyncio")
async def test_new_stream_closes_the_one_still_open() -> None:
    held = HeldStream(sse({"type": "first_token", "content": "The old ", "start_tts": True}))
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        if len(requests) == 1:
            return httpx.Response(200, headers=SSE_HEADERS, stream=held)
        return httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=sse({"type": "first_token", "content": "New answer.", "start_tts": True}, {"type": "complete"}),
        )

    client, chat = chat_client(handler)
    async with client:
        first = chat.stream([ChatMessage("user", "Old question")])
        opening = await first.__anext__()
        assert opening.content == "The old "

        events = await collect(chat, messages=[ChatMessage("user", "New question")])
        assert held.closed
        with pytest.raises(StopAsyncIteration):
            await first.__anext__()

    assert [event.type for event in events] == ["first_token", "complete"]
    assert chat.buffer == "New answer."
    assert [body["messages"][0]["content"] for body in requests] == ["Old question", "New question"]
    assert not chat.active


@pytest.mark.anyio("asyncio")
async def test_text_only_flag_is_forwarded() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, headers=SSE_HEADERS, content=sse({"type": "complete", "conversationId": 1}))

    client, chat = chat_client(handler)
    async with client:
        await collect(chat, text_only=True)
    assert captured["text_only"] is True


@pytest.mark.anyio("asyncio")
async def test_background_stream_reports_through_callbacks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=sse(
                {"type": "first_token", "content": "Earthy ", "start_tts": True},
                {"type": "token", "content": "and bright."},
                {"type": "complete", "conversationId": 11},
            ),
        )

    client, chat = chat_client(handler)
    seen: list[str] = []
    done = asyncio.Event()
    result = {}

    def on_complete(text: str, conversation_id) -> None:
        result.update(text=text, conversation_id=conversation_id)
        done.set()

    chat.on_event = lambda event: seen.append(event.type)
    chat.on_complete = on_complete
    async with client:
        await chat.start_streaming([ChatMessage("user", "Describe it")])
        await asyncio.wait_for(done.wait(), timeout=1)
    assert seen == ["first_token", "token"]
    assert result == {"text": "Earthy and bright.", "conversation_id": 11}


@pytest.mark.anyio("asyncio")
async def test_background_stream_reports_partial_on_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = sse({"type": "first_token", "content": "Crisp"})
        return httpx.Response(200, headers=SSE_HEADERS, stream=BrokenStream(body))

    client, chat = chat_client(handler)
    errors = []
    done = asyncio.Event()

    def on_error(message: str, partial: str) -> None:
        errors.append((message, partial))
        done.set()

    chat.on_error = on_error
    async with client:
        await chat.start_streaming([ChatMessage("user", "Describe it")])
        await asyncio.wait_for(done.wait(), timeout=1)
    assert errors == [(StreamInterrupted.user_message, "Crisp")]


def test_envelope_round_trip_shapes() -> None:
    assert StreamingEvent(type="token", content="x").to_envelope() == {"type": "token", "content": "x"}
    assert StreamingEvent.from_envelope({"type": "complete", "conversationId": 5}).conversation_id == 5
    with pytest.raises(ProtocolError):
        StreamingEvent.from_envelope({"type": "delta", "content": "x"})
