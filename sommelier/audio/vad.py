from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from sommelier.audio.capture import MicrophoneStream
from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.clock import CLOCK, Clock
from sommelier.orchestrator.events import VOICE_VOLUME
from sommelier.telemetry.logging import get_logger

POLL_INTERVAL_MS = 100
FFT_SIZE = 256
SMOOTHING_TIME_CONSTANT = 0.8


@dataclass(frozen=True, slots=True)
class VoiceActivityConfig:
    silence_threshold: float = 5.0
    voice_threshold: float = 5.0
    silence_duration_ms: int = 1500
    consecutive_silence_limit: int = 3


class SpectrumAnalyser:
    """Smoothed magnitude spectrum scaled to bytes, matching Web Audio's analyser node."""

    def __init__(
        self,
        stream: MicrophoneStream,
        fft_size: int = FFT_SIZE,
        smoothing: float = SMOOTHING_TIME_CONSTANT,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ) -> None:
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self._window = np.blackman(fft_size)
        self._samples = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)
        self._remove_listener: Callable[[], None] | None = stream.add_listener(self.push)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, frame: np.ndarray) -> None:
        if frame.shape[0] >= self.fft_size:
            self._samples = np.asarray(frame[-self.fft_size :], dtype=np.float32)
        else:
            self._samples = np.concatenate((self._samples[frame.shape[0] :], frame)).astype(np.float32)

    def byte_frequency_data(self) -> np.ndarray:
        spectrum = np.abs(np.fft.rfft(self._samples * self._window))[: self.frequency_bin_count] / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * spectrum
        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(self._smoothed)
        scaled = 255.0 * (decibels - self.min_decibels) / (self.max_decibels - self.min_decibels)
        return np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0), 0, 255).astype(np.uint8)

    def average_energy(self) -> float:
        return float(self.byte_frequency_data().mean())

    def close(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None


class VoiceActivityDetector:
    """Classifies polled spectral energy as voice or silence and detects end of speech.

    Each full ``silence_duration_ms`` window of uninterrupted silence counts
    once; when ``consecutive_silence_limit`` windows have elapsed the
    recording-complete callback fires a single time and polling stops. Voice
    always resets the window and the count.
    """

    def __init__(
        self,
        config: VoiceActivityConfig | None = None,
        bus: EventBus | None = None,
        clock: Clock = CLOCK,
        on_voice_detected: Callable[[], None] | None = None,
        on_silence_detected: Callable[[], None] | None = None,
        on_recording_complete: Callable[[], None] | None = None,
        on_volume_change: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or VoiceActivityConfig()
        self._bus = bus
        self._clock = clock
        self._on_voice_detected = on_voice_detected
        self._on_silence_detected = on_silence_detected
        self._on_recording_complete = on_recording_complete
        self._on_volume_change = on_volume_change
        self._analyser: SpectrumAnalyser | None = None
        self._task: asyncio.Task[None] | None = None
        self._silence_started_ms: float | None = None
        self._silence_count = 0
        self._completed = False
        self._logger = get_logger(__name__)

    @property
    def active(self) -> bool:
        return self._task is not None

    @property
    def consecutive_silence_count(self) -> int:
        return self._silence_count

    def start(self, stream: MicrophoneStream) -> None:
        if self._task is not None:
            return
        self._reset_counters()
        self._analyser = SpectrumAnalyser(stream)
        self._task = asyncio.create_task(self._poll(self._analyser), name="vad-poll")
        self._logger.debug("vad.started", **vars_of(self.config))

    def process(self, energy: float, now_ms: float) -> bool:
        """Classify one energy sample; return True once the utterance is complete."""
        if self._completed:
            return True
        if energy > self.config.voice_threshold:
            self._silence_started_ms = None
            self._silence_count = 0
            if self._on_voice_detected:
                self._on_voice_detected()
            return False

        if self._silence_started_ms is None:
            self._silence_started_ms = now_ms
        elif now_ms - self._silence_started_ms > self.config.silence_duration_ms:
            self._silence_count += 1
            self._silence_started_ms = now_ms
            self._logger.debug("vad.silence_window", count=self._silence_count)
            if self._silence_count >= self.config.consecutive_silence_limit:
                self._completed = True
                self._logger.info("vad.recording_complete", windows=self._silence_count)
                if self._on_recording_complete:
                    self._on_recording_complete()
                return True

        if self._on_silence_detected:
            self._on_silence_detected()
        return False

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._analyser is not None:
            self._analyser.close()
            self._analyser = None
        self._reset_counters()

    async def _poll(self, analyser: SpectrumAnalyser) -> None:
        async for now in self._clock.ticks(POLL_INTERVAL_MS):
            energy = analyser.average_energy()
            if self._on_volume_change:
                self._on_volume_change(energy)
            if self._bus is not None:
                await self._bus.publish(
                    VOICE_VOLUME,
                    {
                        "volume": energy,
                        "threshold": self.config.voice_threshold,
                        "silenceThreshold": self.config.silence_threshold,
                    },
                )
            if self.process(energy, now):
                break
        if self._task is asyncio.current_task():
            self._task = None

    def _reset_counters(self) -> None:
        self._silence_started_ms = None
        self._silence_count = 0
        self._completed = False


def vars_of(config: VoiceActivityConfig) -> dict[str, float]:
    return {
        "silence_threshold": config.silence_threshold,
        "voice_threshold": config.voice_threshold,
        "silence_duration_ms": config.silence_duration_ms,
        "consecutive_silence_limit": config.consecutive_silence_limit,
    }


__all__ = ["VoiceActivityConfig", "VoiceActivityDetector", "SpectrumAnalyser", "POLL_INTERVAL_MS"]
