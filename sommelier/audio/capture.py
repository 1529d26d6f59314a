from __future__ import annotations

import io
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal, Protocol

import numpy as np
import soundfile as sf

from sommelier.errors import DeviceError
from sommelier.orchestrator.events import WAV_MIME_TYPE, AudioBlob

PermissionStatus = Literal["granted", "denied", "prompt"]
FrameListener = Callable[[np.ndarray], None]


@dataclass(frozen=True, slots=True)
class CaptureConstraints:
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int = 44_100
    channels: int = 1


class ConstraintsNotSupported(DeviceError):
    user_message = "Microphone constraints not supported"


class MicrophoneStream(Protocol):
    sample_rate: int
    channels: int

    def add_listener(self, listener: FrameListener) -> Callable[[], None]: ...

    def stop(self) -> None: ...


class MicrophoneDevice(Protocol):
    async def query_permission(self) -> PermissionStatus | None:
        """Return the platform permission state, or None when the platform cannot report it."""
        ...

    async def open(self, constraints: CaptureConstraints | None = None) -> MicrophoneStream: ...


def float_to_pcm16(frame: np.ndarray) -> bytes:
    clipped = np.clip(frame, -1.0, 1.0)
    return (clipped * (2**15 - 1)).astype(np.int16).tobytes()


def encode_wav(chunks: list[bytes], sample_rate: int, channels: int = 1) -> AudioBlob:
    pcm = np.frombuffer(b"".join(chunks), dtype=np.int16)
    if channels > 1:
        pcm = pcm.reshape(-1, channels)
    with io.BytesIO() as buffer:
        sf.write(buffer, pcm, sample_rate, format="WAV", subtype="PCM_16")
        return AudioBlob(data=buffer.getvalue(), mime_type=WAV_MIME_TYPE)


class AudioCapture:
    """Buffers a live stream into PCM16 fragments delivered every ``timeslice_ms``."""

    def __init__(
        self,
        stream: MicrophoneStream,
        on_data: Callable[[bytes], None],
        timeslice_ms: int = 100,
    ) -> None:
        self._stream = stream
        self._on_data = on_data
        self._slice_samples = max(1, int(stream.sample_rate * timeslice_ms / 1000))
        self._pending: list[np.ndarray] = []
        self._pending_samples = 0
        self._remove_listener: Callable[[], None] | None = None

    @property
    def state(self) -> Literal["inactive", "recording"]:
        return "recording" if self._remove_listener else "inactive"

    def start(self) -> None:
        if self._remove_listener is None:
            self._remove_listener = self._stream.add_listener(self._on_frame)

    def stop(self) -> None:
        if self._remove_listener is None:
            return
        self._remove_listener()
        self._remove_listener = None
        self._flush()

    def _on_frame(self, frame: np.ndarray) -> None:
        self._pending.append(frame)
        self._pending_samples += frame.shape[0]
        if self._pending_samples >= self._slice_samples:
            self._flush()

    def _flush(self) -> None:
        if not self._pending:
            return
        data = float_to_pcm16(np.concatenate(self._pending))
        self._pending = []
        self._pending_samples = 0
        if data:
            self._on_data(data)


__all__ = [
    "AudioCapture",
    "CaptureConstraints",
    "ConstraintsNotSupported",
    "MicrophoneDevice",
    "MicrophoneStream",
    "FrameListener",
    "PermissionStatus",
    "encode_wav",
    "float_to_pcm16",
]
