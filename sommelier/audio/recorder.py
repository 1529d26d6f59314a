from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from sommelier.audio.capture import (
    AudioCapture,
    CaptureConstraints,
    ConstraintsNotSupported,
    MicrophoneDevice,
    MicrophoneStream,
    encode_wav,
)
from sommelier.audio.permissions import PermissionGate
from sommelier.audio.vad import VoiceActivityConfig, VoiceActivityDetector
from sommelier.errors import DeviceError, PermissionDenied, VoicePipelineError
from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.clock import CLOCK, Clock
from sommelier.orchestrator.events import AudioBlob, RecordingSession
from sommelier.orchestrator.tasks import spawn
from sommelier.telemetry.logging import get_logger

DURATION_TICK_MS = 100


class VoiceRecorder:
    """Single-session recorder combining microphone capture with voice activity detection.

    A session starts after the permission gate agrees, accumulates PCM
    fragments in arrival order, and ends either on ``stop_recording`` or when
    the detector decides the utterance is finished. Ending always releases
    the microphone, the detector, and the duration timer.
    """

    def __init__(
        self,
        device: MicrophoneDevice,
        gate: PermissionGate,
        bus: EventBus | None = None,
        clock: Clock = CLOCK,
        vad_config: VoiceActivityConfig | None = None,
        constraints: CaptureConstraints | None = None,
        timeslice_ms: int = 100,
        on_recording_start: Callable[[], Any] | None = None,
        on_recording_stop: Callable[[AudioBlob], Any] | None = None,
        on_recording_error: Callable[[str], Any] | None = None,
        on_voice_activity: Callable[[bool], Any] | None = None,
        on_duration: Callable[[float], Any] | None = None,
    ) -> None:
        self._device = device
        self._gate = gate
        self._bus = bus
        self._clock = clock
        self._vad_config = vad_config or VoiceActivityConfig()
        self._constraints = constraints or CaptureConstraints()
        self._timeslice_ms = timeslice_ms
        self.on_recording_start = on_recording_start
        self.on_recording_stop = on_recording_stop
        self.on_recording_error = on_recording_error
        self.on_voice_activity = on_voice_activity
        self.on_duration = on_duration

        self._generation = 0
        self._session: RecordingSession | None = None
        self._stream: MicrophoneStream | None = None
        self._capture: AudioCapture | None = None
        self._detector: VoiceActivityDetector | None = None
        self._timer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self.last_error: VoicePipelineError | None = None
        self._logger = get_logger(__name__)

    @property
    def session(self) -> RecordingSession | None:
        return self._session

    @property
    def is_recording(self) -> bool:
        return self._session is not None and self._session.is_recording

    async def start_recording(self) -> None:
        if self._session is not None:
            self._logger.info("recorder.superseded", session_id=self._session.session_id)
            await self._cleanup()
        self._generation += 1
        generation = self._generation
        self.last_error = None

        if not self._gate.should_skip_prompt() and not self._gate.skip_prompt_requested():
            granted = await self._gate.request_permission()
            if generation != self._generation:
                return
            if not granted:
                await self._fail(PermissionDenied())
                return

        stream = await self._open_stream()
        if stream is None:
            return
        if generation != self._generation:
            stream.stop()
            return

        session = RecordingSession(session_id=generation, is_recording=True)
        self._session = session
        self._stream = stream
        self._capture = AudioCapture(
            stream,
            lambda data: self._on_fragment(generation, data),
            timeslice_ms=self._timeslice_ms,
        )
        self._detector = VoiceActivityDetector(
            self._vad_config,
            bus=self._bus,
            clock=self._clock,
            on_voice_detected=lambda: self._on_voice(generation, True),
            on_silence_detected=lambda: self._on_voice(generation, False),
            on_recording_complete=lambda: self._on_utterance_complete(generation),
        )
        self._capture.start()
        self._detector.start(stream)
        self._timer = asyncio.create_task(self._track_duration(session), name="recorder-duration")
        self._logger.info("recorder.started", session_id=generation, sample_rate=stream.sample_rate)
        await self._invoke(self.on_recording_start)

    async def stop_recording(self) -> AudioBlob | None:
        session = self._session
        if session is None or not session.is_recording:
            return None
        session.is_recording = False
        try:
            if self._capture is not None:
                self._capture.stop()
            stream = self._stream
            sample_rate = stream.sample_rate if stream is not None else self._constraints.sample_rate
            channels = stream.channels if stream is not None else self._constraints.channels
            blob = encode_wav(session.audio_chunks, sample_rate, channels)
            self._logger.info(
                "recorder.stopped",
                session_id=session.session_id,
                fragments=len(session.audio_chunks),
                bytes=blob.size,
                duration_ms=round(session.duration_ms),
            )
            await self._invoke(self.on_recording_stop, blob)
            return blob
        finally:
            await self._cleanup()

    async def cancel_recording(self) -> None:
        """Abandon the current session without producing a blob."""
        self._generation += 1
        if self._session is not None:
            self._logger.info("recorder.cancelled", session_id=self._session.session_id)
        await self._cleanup()

    async def _open_stream(self) -> MicrophoneStream | None:
        constraints: CaptureConstraints | None = self._constraints
        last_error: VoicePipelineError = DeviceError()
        for attempt in range(2):
            try:
                return await self._device.open(constraints)
            except ConstraintsNotSupported as exc:
                self._logger.warning("recorder.open.overconstrained", attempt=attempt, error=str(exc))
                constraints = None
                last_error = exc
            except PermissionDenied as exc:
                self._gate.save(False)
                await self._fail(exc)
                return None
            except DeviceError as exc:
                self._logger.warning("recorder.open.failed", attempt=attempt, error=str(exc))
                last_error = exc
        await self._fail(last_error)
        return None

    def _on_fragment(self, generation: int, data: bytes) -> None:
        session = self._session
        if session is None or session.session_id != generation:
            return
        session.audio_chunks.append(data)

    def _on_voice(self, generation: int, active: bool) -> None:
        session = self._session
        if session is None or session.session_id != generation:
            return
        if session.is_voice_active != active:
            session.is_voice_active = active
            if self.on_voice_activity is not None:
                spawn(self._tasks, self._invoke(self.on_voice_activity, active), "recorder-voice-activity", self._logger)

    def _on_utterance_complete(self, generation: int) -> None:
        spawn(self._tasks, self._stop_if_current(generation), "recorder-auto-stop", self._logger)

    async def _stop_if_current(self, generation: int) -> None:
        if self._session is not None and self._session.session_id == generation:
            await self.stop_recording()

    async def _track_duration(self, session: RecordingSession) -> None:
        started = self._clock.monotonic_ms()
        async for now in self._clock.ticks(DURATION_TICK_MS):
            if not session.is_recording:
                break
            session.duration_ms = now - started
            await self._invoke(self.on_duration, session.duration_ms)

    async def _cleanup(self) -> None:
        timer, self._timer = self._timer, None
        detector, self._detector = self._detector, None
        capture, self._capture = self._capture, None
        stream, self._stream = self._stream, None
        session, self._session = self._session, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        if detector is not None:
            await detector.stop()
        if capture is not None:
            capture.stop()
        if stream is not None:
            try:
                stream.stop()
            except Exception as exc:
                self._logger.warning("recorder.release_failed", error=str(exc))
        if session is not None:
            session.is_recording = False
            session.is_voice_active = False
            session.audio_chunks.clear()

    async def _fail(self, error: VoicePipelineError) -> None:
        self.last_error = error
        self._logger.error("recorder.error", error=error.message)
        await self._invoke(self.on_recording_error, error.message)

    async def _invoke(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result


__all__ = ["VoiceRecorder", "DURATION_TICK_MS"]
