from __future__ import annotations

import functools
from pathlib import Path
from typing import Literal

from platformdirs import user_state_dir
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

TTSVoice = Literal["alloy", "echo", "fable", "onyx", "nova", "shimmer"]


class ServiceSettings(BaseModel):
    base_url: str
    api_key: str | None = None
    timeout_seconds: float = 30.0
    transcribe_path: str = "/api/transcribe"
    tts_path: str = "/api/text-to-speech"
    chat_path: str = "/api/chat"


class RecorderSettings(BaseModel):
    sample_rate: int = 44_100
    channels: int = 1
    timeslice_ms: int = 100
    input_device: str | int | None = None


class VoiceActivitySettings(BaseModel):
    silence_threshold: float = 5.0
    voice_threshold: float = 5.0
    silence_duration_ms: int = 1500
    consecutive_silence_limit: int = 3


class PlaybackSettings(BaseModel):
    default_volume: float = Field(default=1.0, ge=0.0, le=1.0)
    fade_out_ms: int = 300
    output_device: str | int | None = None


class SpeechSettings(BaseModel):
    tts_voice: TTSVoice = "nova"
    cache_size: int = 10
    use_service_voice: bool = True
    continuous_conversation: bool = False


class GatewaySettings(BaseModel):
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-4o"
    tts_model: str = "tts-1"
    stt_model: str = "whisper-1"
    temp_dir: Path | None = None
    enable_streaming: bool = True


class TelemetrySettings(BaseModel):
    log_level: str = "INFO"
    otlp_endpoint: str | None = None


class UISettings(BaseModel):
    origin: str = "http://localhost:5173"
    state_path: Path


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", ".env.local"), env_file_encoding="utf-8", extra="ignore")

    SERVICE_BASE_URL: str = "http://localhost:5000"
    SERVICE_API_KEY: str | None = None
    SERVICE_TIMEOUT_SECONDS: float = 30.0
    RECORDER_SAMPLE_RATE: int = 44_100
    RECORDER_CHANNELS: int = 1
    AUDIO_INPUT_DEVICE: str | int | None = None
    AUDIO_OUTPUT_DEVICE: str | int | None = None
    VAD_SILENCE_THRESHOLD: float = 5.0
    VAD_VOICE_THRESHOLD: float = 5.0
    VAD_SILENCE_DURATION_MS: int = 1500
    VAD_CONSECUTIVE_SILENCE_LIMIT: int = 3
    PLAYBACK_DEFAULT_VOLUME: float = 1.0
    PLAYBACK_FADE_OUT_MS: int = 300
    TTS_VOICE: TTSVoice = "nova"
    AUDIO_CACHE_SIZE: int = 10
    USE_SERVICE_VOICE: bool = True
    CONTINUOUS_CONVERSATION: bool = False
    CLIENT_STATE_PATH: str | None = None
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_CHAT_MODEL: str = "gpt-4o"
    OPENAI_TTS_MODEL: str = "tts-1"
    OPENAI_STT_MODEL: str = "whisper-1"
    GATEWAY_TEMP_DIR: str | None = None
    ENABLE_STREAMING: bool = True
    LOG_LEVEL: str = "INFO"
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    UI_ORIGIN: str = "http://localhost:5173"

    @staticmethod
    def _coerce_device(device: str | int | None) -> str | int | None:
        if isinstance(device, str):
            trimmed = device.strip()
            if not trimmed:
                return None
            if trimmed.isdigit():
                return int(trimmed)
            return trimmed
        return device

    @property
    def service(self) -> ServiceSettings:
        return ServiceSettings(
            base_url=self.SERVICE_BASE_URL,
            api_key=self.SERVICE_API_KEY,
            timeout_seconds=self.SERVICE_TIMEOUT_SECONDS,
        )

    @property
    def recorder(self) -> RecorderSettings:
        return RecorderSettings(
            sample_rate=self.RECORDER_SAMPLE_RATE,
            channels=self.RECORDER_CHANNELS,
            input_device=self._coerce_device(self.AUDIO_INPUT_DEVICE),
        )

    @property
    def vad(self) -> VoiceActivitySettings:
        return VoiceActivitySettings(
            silence_threshold=self.VAD_SILENCE_THRESHOLD,
            voice_threshold=self.VAD_VOICE_THRESHOLD,
            silence_duration_ms=self.VAD_SILENCE_DURATION_MS,
            consecutive_silence_limit=self.VAD_CONSECUTIVE_SILENCE_LIMIT,
        )

    @property
    def playback(self) -> PlaybackSettings:
        return PlaybackSettings(
            default_volume=self.PLAYBACK_DEFAULT_VOLUME,
            fade_out_ms=self.PLAYBACK_FADE_OUT_MS,
            output_device=self._coerce_device(self.AUDIO_OUTPUT_DEVICE),
        )

    @property
    def speech(self) -> SpeechSettings:
        return SpeechSettings(
            tts_voice=self.TTS_VOICE,
            cache_size=self.AUDIO_CACHE_SIZE,
            use_service_voice=self.USE_SERVICE_VOICE,
            continuous_conversation=self.CONTINUOUS_CONVERSATION,
        )

    @property
    def gateway(self) -> GatewaySettings:
        return GatewaySettings(
            openai_api_key=self.OPENAI_API_KEY,
            openai_base_url=self.OPENAI_BASE_URL,
            chat_model=self.OPENAI_CHAT_MODEL,
            tts_model=self.OPENAI_TTS_MODEL,
            stt_model=self.OPENAI_STT_MODEL,
            temp_dir=Path(self.GATEWAY_TEMP_DIR) if self.GATEWAY_TEMP_DIR else None,
            enable_streaming=self.ENABLE_STREAMING,
        )

    @property
    def telemetry(self) -> TelemetrySettings:
        return TelemetrySettings(log_level=self.LOG_LEVEL, otlp_endpoint=self.OTEL_EXPORTER_OTLP_ENDPOINT)

    @property
    def ui(self) -> UISettings:
        if self.CLIENT_STATE_PATH:
            state_path = Path(self.CLIENT_STATE_PATH)
        else:
            state_path = Path(user_state_dir("sommelier-voice")) / "client_state.json"
        return UISettings(origin=self.UI_ORIGIN, state_path=state_path)


@functools.lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return AppSettings()


def package_root() -> Path:
    return Path(__file__).resolve().parent


__all__ = ["AppSettings", "TTSVoice", "load_settings", "package_root"]
