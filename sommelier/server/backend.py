from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any, Protocol

import httpx

from sommelier.config import GatewaySettings
from sommelier.errors import ProtocolError, RateLimited, ServiceError, parse_retry_after
from sommelier.llm.streaming import iter_sse_data
from sommelier.telemetry.logging import get_logger

STREAM_DONE = "[DONE]"


class SpeechBackend(Protocol):
    @property
    def configured(self) -> bool: ...

    async def synthesize(self, text: str, voice: str) -> bytes: ...

    async def transcribe(self, path: Path) -> str: ...

    async def complete(self, messages: Sequence[dict[str, str]]) -> str: ...

    def stream(self, messages: Sequence[dict[str, str]]) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


def _raise_for_upstream(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        body: Any = response.json()
    except ValueError:
        body = None
    message = None
    if isinstance(body, dict):
        error = body.get("error")
        message = error.get("message") if isinstance(error, dict) else error
    if response.status_code == 429:
        raise RateLimited(
            "OpenAI rate limit exceeded",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    raise ServiceError(
        str(message or f"Upstream responded with {response.status_code}"),
        status_code=response.status_code,
        details=body,
    )


class OpenAIBackend:
    """Speech, transcription and chat against an OpenAI-compatible HTTP API."""

    def __init__(self, settings: GatewaySettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        headers = {}
        if settings.openai_api_key:
            headers["Authorization"] = f"Bearer {settings.openai_api_key}"
        self._client = httpx.AsyncClient(
            base_url=settings.openai_base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(60.0, connect=5.0),
            transport=transport,
        )
        self._logger = get_logger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self._settings.openai_api_key)

    async def synthesize(self, text: str, voice: str) -> bytes:
        payload = {"model": self._settings.tts_model, "voice": voice, "input": text, "response_format": "mp3"}
        try:
            response = await self._client.post("/audio/speech", json=payload)
        except httpx.HTTPError as exc:
            raise ServiceError(f"Speech request failed: {exc}") from exc
        _raise_for_upstream(response)
        return response.content

    async def transcribe(self, path: Path) -> str:
        try:
            with path.open("rb") as handle:
                response = await self._client.post(
                    "/audio/transcriptions",
                    data={"model": self._settings.stt_model},
                    files={"file": (path.name, handle, "audio/wav")},
                )
        except httpx.HTTPError as exc:
            raise ServiceError(f"Transcription request failed: {exc}") from exc
        _raise_for_upstream(response)
        try:
            return str(response.json()["text"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ServiceError("Malformed transcription response") from exc

    async def complete(self, messages: Sequence[dict[str, str]]) -> str:
        payload = {"model": self._settings.chat_model, "messages": list(messages), "temperature": 0.7}
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.HTTPError as exc:
            raise ServiceError(f"Chat request failed: {exc}") from exc
        _raise_for_upstream(response)
        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ServiceError("Malformed chat response") from exc

    async def stream(self, messages: Sequence[dict[str, str]]) -> AsyncIterator[str]:
        payload = {
            "model": self._settings.chat_model,
            "messages": list(messages),
            "temperature": 0.7,
            "stream": True,
        }
        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    _raise_for_upstream(response)
                async for data in iter_sse_data(response):
                    if data.strip() == STREAM_DONE:
                        return
                    try:
                        chunk = json.loads(data)
                        delta = chunk["choices"][0]["delta"].get("content") if chunk.get("choices") else None
                    except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
                        raise ProtocolError(f"Malformed upstream chunk: {exc}") from exc
                    if delta:
                        yield delta
        except httpx.HTTPError as exc:
            raise ServiceError(f"Chat stream failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["OpenAIBackend", "SpeechBackend", "STREAM_DONE"]
