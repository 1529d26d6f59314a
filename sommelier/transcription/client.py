from __future__ import annotations

import httpx

from sommelier.errors import ServiceError
from sommelier.orchestrator.events import AudioBlob, WAV_MIME_TYPE
from sommelier.service import raise_for_service_status
from sommelier.telemetry.logging import get_logger
from sommelier.telemetry.tracing import get_tracer
from sommelier.transcription.base import Transcriber

_EXTENSIONS = {WAV_MIME_TYPE: "wav", "audio/webm": "webm", "audio/mpeg": "mp3", "audio/ogg": "ogg"}


class TranscriptionClient(Transcriber):
    """Posts finished recordings to the gateway's transcription endpoint."""

    def __init__(self, client: httpx.AsyncClient, path: str = "/api/transcribe") -> None:
        self._client = client
        self._path = path
        self._logger = get_logger(__name__)
        self._tracer = get_tracer(__name__)

    async def transcribe(self, blob: AudioBlob) -> str:
        extension = _EXTENSIONS.get(blob.mime_type.split(";")[0], "wav")
        files = {"audio": (f"recording.{extension}", blob.data, blob.mime_type)}
        with self._tracer.start_as_current_span("transcription.request") as span:
            span.set_attribute("audio.bytes", blob.size)
            self._logger.info("transcription.request", bytes=blob.size, mime_type=blob.mime_type)
            try:
                response = await self._client.post(self._path, files=files)
            except httpx.HTTPError as exc:
                raise ServiceError(f"Transcription request failed: {exc}") from exc
            raise_for_service_status(response)
            try:
                body = response.json()
                text = body["text"]
            except (ValueError, KeyError, TypeError) as exc:
                raise ServiceError("Malformed transcription response", status_code=response.status_code) from exc
            if not isinstance(text, str):
                raise ServiceError("Malformed transcription response", status_code=response.status_code)
            self._logger.info("transcription.result", chars=len(text))
            return text.strip()

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["TranscriptionClient"]
