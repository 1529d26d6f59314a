from __future__ import annotations

import httpx

from sommelier.config import TTSVoice
from sommelier.errors import ServiceError
from sommelier.orchestrator.events import MPEG_MIME_TYPE, AudioBlob
from sommelier.service import raise_for_service_status
from sommelier.telemetry.logging import get_logger
from sommelier.telemetry.tracing import get_tracer
from sommelier.tts.cache import AudioCache


class SpeechClient:
    """Fetches synthesized speech from the gateway, consulting the audio cache first."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: AudioCache | None = None,
        path: str = "/api/text-to-speech",
        default_voice: TTSVoice = "nova",
    ) -> None:
        self._client = client
        self._cache = cache or AudioCache()
        self._path = path
        self._default_voice = default_voice
        self._logger = get_logger(__name__)
        self._tracer = get_tracer(__name__)

    @property
    def cache(self) -> AudioCache:
        return self._cache

    async def synthesize(self, text: str, voice: TTSVoice | None = None) -> AudioBlob:
        cached = self._cache.get(text)
        if cached is not None:
            self._logger.debug("tts.cache.hit", chars=len(text))
            return cached

        payload = {"text": text, "voice": voice or self._default_voice}
        preview = text if len(text) <= 120 else text[:120] + "…"
        with self._tracer.start_as_current_span("tts.request") as span:
            span.set_attribute("tts.chars", len(text))
            self._logger.info("tts.request", voice=payload["voice"], input=preview)
            try:
                async with self._client.stream("POST", self._path, json=payload) as response:
                    await response.aread()
                    raise_for_service_status(response)
                    audio = response.content
            except httpx.HTTPError as exc:
                raise ServiceError(f"Text-to-speech request failed: {exc}") from exc
        if not audio:
            raise ServiceError("Text-to-speech returned no audio")
        mime_type = response.headers.get("content-type", MPEG_MIME_TYPE).split(";")[0]
        blob = AudioBlob(data=audio, mime_type=mime_type)
        self._cache.set(text, blob)
        return blob

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["SpeechClient"]
