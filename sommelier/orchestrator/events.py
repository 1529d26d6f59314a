from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

WAV_MIME_TYPE = "audio/wav"
MPEG_MIME_TYPE = "audio/mpeg"

# Cross-component event names; UI clients depend on these exact strings.
VOICE_VOLUME = "voiceVolume"
MIC_STATUS = "mic-status"
TRIGGER_VOICE_ASSISTANT = "triggerVoiceAssistant"
PLAY_AUDIO_RESPONSE = "playAudioResponse"
SUGGESTION_PLAYBACK_STARTED = "suggestionPlaybackStarted"
SUGGESTION_PLAYBACK_ENDED = "suggestionPlaybackEnded"
CACHED_RESPONSE_ENDED = "cachedResponseEnded"
DEPLOYMENT_AUDIO_STOPPED = "deploymentAudioStopped"
VOICE_STATE_CHANGED = "voiceStateChanged"
ASSISTANT_STATE = "assistantState"

State = Literal["IDLE", "LISTENING", "THINKING", "STREAMING", "SPEAKING", "ERROR"]
MicStatus = Literal["idle", "listening", "processing", "thinking"]


@dataclass(slots=True)
class AudioBlob:
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class RecordingSession:
    session_id: int
    is_recording: bool = False
    is_voice_active: bool = False
    duration_ms: float = 0.0
    audio_chunks: list[bytes] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class VoiceState:
    is_listening: bool = False
    is_responding: bool = False
    is_thinking: bool = False
    is_playing_audio: bool = False
    is_voice_active: bool = False
    show_bottom_sheet: bool = False
    show_unmute_button: bool = False
    show_ask_button: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = [
    "AudioBlob",
    "RecordingSession",
    "VoiceState",
    "State",
    "MicStatus",
    "WAV_MIME_TYPE",
    "MPEG_MIME_TYPE",
    "VOICE_VOLUME",
    "MIC_STATUS",
    "TRIGGER_VOICE_ASSISTANT",
    "PLAY_AUDIO_RESPONSE",
    "SUGGESTION_PLAYBACK_STARTED",
    "SUGGESTION_PLAYBACK_ENDED",
    "CACHED_RESPONSE_ENDED",
    "DEPLOYMENT_AUDIO_STOPPED",
    "VOICE_STATE_CHANGED",
    "ASSISTANT_STATE",
]
