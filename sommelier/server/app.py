from __future__ import annotations

import asyncio
import itertools
import json
import tempfile
import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from sommelier.config import AppSettings, load_settings
from sommelier.errors import RateLimited, VoicePipelineError
from sommelier.llm.streaming import EVENT_STREAM
from sommelier.llm.types import StreamingEvent
from sommelier.persona import Persona, load_persona
from sommelier.server.backend import OpenAIBackend, SpeechBackend
from sommelier.server.schemas import ChatRequest, TextToSpeechRequest
from sommelier.telemetry.logging import get_logger
from sommelier.telemetry.tracing import get_tracer

CHAT_TIMEOUT_SECONDS = 20.0
STREAM_FAILED_MESSAGE = "Streaming failed, falling back to regular response"

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _error(status_code: int, error: str, details: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(body, status_code=status_code)


def _upstream_error(exc: VoicePipelineError, fallback: str) -> JSONResponse:
    if isinstance(exc, RateLimited):
        return _error(429, "OpenAI rate limit exceeded")
    return _error(500, fallback, exc.message)


def _sse(event: StreamingEvent) -> str:
    return f"data: {json.dumps(event.to_envelope())}\n\n"


def _temp_dir(configured: Path | None) -> Path:
    directory = configured or Path(tempfile.gettempdir()) / "sommelier-voice"
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _prepare_messages(request: ChatRequest, persona: Persona) -> list[dict[str, str]]:
    messages = [message.model_dump() for message in request.messages]
    if not any(message["role"] == "system" for message in messages):
        system = persona.system_message(request.wine_context, request.optimize_for_speed)
        messages.insert(0, {"role": "system", "content": system})
    return messages


async def _stream_reply(
    backend: SpeechBackend,
    messages: list[dict[str, str]],
    conversation_id: int | str,
    speak: bool,
) -> AsyncIterator[str]:
    first = True
    chars = 0
    try:
        async for delta in backend.stream(messages):
            chars += len(delta)
            if first:
                first = False
                yield _sse(StreamingEvent(type="first_token", content=delta, start_tts=speak))
            else:
                yield _sse(StreamingEvent(type="token", content=delta))
    except VoicePipelineError as exc:
        logger.warning("gateway.chat.stream_failed", error=exc.message, chars=chars)
        yield _sse(StreamingEvent(type="error", message=STREAM_FAILED_MESSAGE))
        return
    logger.info("gateway.chat.stream_complete", chars=chars, conversation_id=conversation_id)
    yield _sse(StreamingEvent(type="complete", conversation_id=conversation_id))


def create_app(
    settings: AppSettings | None = None,
    backend: SpeechBackend | None = None,
    persona: Persona | None = None,
) -> FastAPI:
    """Build the speech gateway: text-to-speech, transcription and chat routes."""
    settings = settings or load_settings()
    gateway = settings.gateway
    backend = backend or OpenAIBackend(gateway)
    persona = persona or load_persona()
    conversation_ids = itertools.count(1)

    app = FastAPI(title="Sommelier Speech Gateway")
    app.state.backend = backend
    origins = {settings.ui.origin}
    if "localhost" in settings.ui.origin:
        origins.add(settings.ui.origin.replace("localhost", "127.0.0.1"))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(origins),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await backend.aclose()

    @app.post("/api/text-to-speech")
    async def text_to_speech(request: Request) -> Response:
        try:
            body = TextToSpeechRequest.model_validate(await request.json())
        except (ValidationError, ValueError) as exc:
            details = exc.errors(include_url=False) if isinstance(exc, ValidationError) else str(exc)
            return _error(400, "Invalid request data", details)
        if not backend.configured:
            logger.error("gateway.tts.unconfigured")
            return _error(500, "API configuration error")
        with tracer.start_as_current_span("gateway.tts"):
            try:
                audio = await backend.synthesize(body.text, body.voice)
            except VoicePipelineError as exc:
                logger.warning("gateway.tts.failed", error=exc.message)
                return _upstream_error(exc, "Failed to generate speech")
        logger.info("gateway.tts.ok", chars=len(body.text), voice=body.voice, bytes=len(audio))
        return Response(
            content=audio,
            media_type="audio/mpeg",
            headers={"Content-Length": str(len(audio)), "Cache-Control": "no-cache"},
        )

    @app.post("/api/transcribe")
    async def transcribe(audio: UploadFile | None = File(default=None)) -> JSONResponse:
        if audio is None:
            return _error(400, "No audio file provided")
        path = _temp_dir(gateway.temp_dir) / f"{uuid.uuid4()}.wav"
        try:
            data = await audio.read()
            await asyncio.to_thread(path.write_bytes, data)
            if not backend.configured:
                logger.error("gateway.stt.unconfigured")
                return _error(500, "API configuration error")
            with tracer.start_as_current_span("gateway.stt"):
                text = await backend.transcribe(path)
        except VoicePipelineError as exc:
            logger.warning("gateway.stt.failed", error=exc.message)
            return _upstream_error(exc, "Failed to transcribe speech")
        finally:
            path.unlink(missing_ok=True)
        logger.info("gateway.stt.ok", bytes=len(data), chars=len(text))
        return JSONResponse({"text": text})

    @app.post("/api/chat", response_model=None)
    async def chat(request: Request) -> Response:
        try:
            body = ChatRequest.model_validate(await request.json())
        except (ValidationError, ValueError) as exc:
            details = exc.errors(include_url=False) if isinstance(exc, ValidationError) else str(exc)
            return _error(400, "Invalid request data", details)
        if not backend.configured:
            logger.error("gateway.chat.unconfigured")
            return _error(500, "API configuration error")
        conversation_id = body.conversation_id if body.conversation_id is not None else next(conversation_ids)
        messages = _prepare_messages(body, persona)
        streaming = gateway.enable_streaming and EVENT_STREAM in request.headers.get("accept", "")
        logger.info(
            "gateway.chat.request",
            messages=len(messages),
            streaming=streaming,
            conversation_id=conversation_id,
            wine=bool(body.wine_context),
        )
        if streaming:
            return StreamingResponse(
                _stream_reply(backend, messages, conversation_id, body.speak),
                media_type=EVENT_STREAM,
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )
        with tracer.start_as_current_span("gateway.chat"):
            try:
                content = await asyncio.wait_for(backend.complete(messages), timeout=CHAT_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("gateway.chat.timeout", timeout=CHAT_TIMEOUT_SECONDS)
                return _error(504, "Chat response timed out")
            except VoicePipelineError as exc:
                logger.warning("gateway.chat.failed", error=exc.message)
                return _upstream_error(exc, "Failed to generate response")
        return JSONResponse(
            {
                "message": {"role": "assistant", "content": content},
                "conversationId": conversation_id,
                "start_tts": body.speak,
            }
        )

    return app


def run(host: str = "127.0.0.1", port: int = 5000) -> None:
    import uvicorn

    from sommelier.telemetry.logging import configure_logging
    from sommelier.telemetry.tracing import configure_tracing

    settings = load_settings()
    configure_logging(settings.telemetry.log_level)
    configure_tracing("sommelier-speech-gateway", settings.telemetry.otlp_endpoint)
    uvicorn.run(create_app(settings), host=host, port=port)


__all__ = ["create_app", "run", "CHAT_TIMEOUT_SECONDS", "STREAM_FAILED_MESSAGE"]
