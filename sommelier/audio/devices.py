from __future__ import annotations

import asyncio
import io
import threading
import weakref
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Optional

import httpx
import numpy as np
import sounddevice as sd
import soundfile as sf

from sommelier.audio.capture import (
    CaptureConstraints,
    ConstraintsNotSupported,
    FrameListener,
    MicrophoneStream,
    PermissionStatus,
)
from sommelier.audio.output import BLOB_SCHEME, BlobURLRegistry
from sommelier.errors import CapabilityUnavailable, DeviceError, PermissionDenied
from sommelier.telemetry.logging import get_logger


class SoundDeviceStream:
    """Live microphone stream; PortAudio callbacks are marshalled onto the event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        sample_rate: int,
        channels: int,
        device: str | int | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._loop = loop
        self._listeners: list[FrameListener] = []
        self._logger = get_logger(__name__)

        def callback(indata, frames, time_info, status) -> None:  # type: ignore[override]
            if status:
                self._logger.warning("audio.capture.status", status=str(status))
            mono = indata.mean(axis=1) if indata.ndim > 1 else indata
            frame = np.array(mono, dtype=np.float32, copy=True)
            if not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._dispatch, frame)

        self._stream: sd.InputStream | None = sd.InputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="float32",
            callback=callback,
            device=device,
        )
        self._stream.start()

    @property
    def active(self) -> bool:
        return self._stream is not None

    def add_listener(self, listener: FrameListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        self._listeners.clear()
        if stream is not None:
            stream.stop()
            stream.close()
            self._logger.info("audio.capture.stopped")

    def _dispatch(self, frame: np.ndarray) -> None:
        if self._stream is None:
            return
        for listener in list(self._listeners):
            listener(frame)


class SoundDeviceMicrophone:
    """Microphone capability backed by PortAudio via sounddevice."""

    def __init__(self, device: str | int | None = None) -> None:
        self._device = device
        self._logger = get_logger(__name__)
        try:
            sd.query_devices(device, kind="input")
        except (sd.PortAudioError, ValueError) as exc:
            raise CapabilityUnavailable(f"No usable input device: {exc}") from exc

    async def query_permission(self) -> PermissionStatus | None:
        # Desktop audio stacks expose no permission query; callers fall back to a trial open.
        return None

    async def open(self, constraints: CaptureConstraints | None = None) -> MicrophoneStream:
        settings = constraints or CaptureConstraints(
            echo_cancellation=False,
            noise_suppression=False,
            auto_gain_control=False,
        )
        if settings.echo_cancellation or settings.noise_suppression or settings.auto_gain_control:
            self._logger.debug(
                "audio.capture.processing_unavailable",
                echo_cancellation=settings.echo_cancellation,
                noise_suppression=settings.noise_suppression,
                auto_gain_control=settings.auto_gain_control,
            )
        try:
            sd.check_input_settings(
                device=self._device,
                channels=settings.channels,
                samplerate=settings.sample_rate,
                dtype="float32",
            )
        except (ValueError, sd.PortAudioError) as exc:
            raise ConstraintsNotSupported(str(exc)) from exc

        loop = asyncio.get_running_loop()
        try:
            stream = SoundDeviceStream(loop, settings.sample_rate, settings.channels, self._device)
        except sd.PortAudioError as exc:
            message = str(exc)
            if "permission" in message.lower() or "not allowed" in message.lower():
                raise PermissionDenied(message) from exc
            raise DeviceError(message) from exc
        self._logger.info(
            "audio.capture.started",
            samplerate=settings.sample_rate,
            channels=settings.channels,
            device=self._device,
        )
        return stream


class SoundDeviceAudioElement:
    """Decodes a source with soundfile and plays it on a PortAudio output stream.

    Volume is read inside the audio callback so changes apply immediately.
    ``on_ended`` and ``on_error`` are delivered on the event loop.
    """

    def __init__(
        self,
        src: str,
        loader: Callable[[str], Awaitable[bytes]],
        device: str | int | None = None,
    ) -> None:
        self.src = src
        self.volume = 1.0
        self.paused = True
        self.on_ended: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None
        self._loader = loader
        self._device = device
        self._data: np.ndarray | None = None
        self._samplerate = 0
        self._position = 0
        self._stream: sd.OutputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._frame_lock = threading.Lock()
        self._logger = get_logger(__name__)

    @property
    def current_time(self) -> float:
        if not self._samplerate:
            return 0.0
        return self._position / float(self._samplerate)

    async def play(self) -> None:
        if not self.paused:
            return
        if self._data is None:
            raw = await self._loader(self.src)
            try:
                with io.BytesIO(raw) as buffer:
                    data, samplerate = sf.read(buffer, dtype="float32", always_2d=True)
            except (sf.LibsndfileError, RuntimeError, TypeError) as exc:
                raise DeviceError(f"Unable to decode audio: {exc}") from exc
            self._data = data
            self._samplerate = int(samplerate)
        self._loop = asyncio.get_running_loop()
        try:
            stream = sd.OutputStream(
                samplerate=self._samplerate,
                channels=self._data.shape[1],
                dtype="float32",
                device=self._device,
                callback=self._callback,
                finished_callback=self._finished_callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            raise DeviceError(str(exc)) from exc
        self._stream = stream
        self.paused = False
        self._logger.debug("audio.output.started", src=self.src, samplerate=self._samplerate)

    def pause(self) -> None:
        if self.paused:
            return
        self.paused = True
        self._close_stream()

    def reset(self) -> None:
        with self._frame_lock:
            self._position = 0

    def _callback(self, outdata, frames, time_info, status) -> None:  # type: ignore[override]
        if status:
            self._logger.warning("audio.output.status", status=str(status))
        data = self._data
        if data is None:
            outdata.fill(0)
            raise sd.CallbackStop
        with self._frame_lock:
            chunk = data[self._position : self._position + frames]
            self._position += chunk.shape[0]
            volume = min(max(float(self.volume), 0.0), 1.0)
        outdata[: chunk.shape[0]] = chunk * volume
        if chunk.shape[0] < frames:
            outdata[chunk.shape[0] :] = 0
            raise sd.CallbackStop

    def _finished_callback(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        reached_end = self._data is not None and self._position >= self._data.shape[0]
        if reached_end:
            loop.call_soon_threadsafe(self._handle_ended)
        elif not self.paused:
            loop.call_soon_threadsafe(self._handle_error, DeviceError("Audio output stopped unexpectedly"))

    def _handle_ended(self) -> None:
        if self.paused and self._stream is None:
            return
        self.paused = True
        self._close_stream()
        if self.on_ended is not None:
            self.on_ended()

    def _handle_error(self, exc: Exception) -> None:
        self.paused = True
        self._close_stream()
        self._logger.error("audio.output.error", src=self.src, error=str(exc))
        if self.on_error is not None:
            self.on_error(exc)

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            self._logger.warning("audio.output.close_failed", error=str(exc))


class SoundDeviceOutput:
    """Creates sounddevice-backed audio elements and can silence all of them at once."""

    def __init__(
        self,
        registry: BlobURLRegistry,
        device: str | int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._registry = registry
        self._device = device
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        self._elements: "weakref.WeakSet[SoundDeviceAudioElement]" = weakref.WeakSet()
        self._logger = get_logger(__name__)

    def create(self, src: str) -> SoundDeviceAudioElement:
        element = SoundDeviceAudioElement(src, self.load, device=self._device)
        self._elements.add(element)
        return element

    def stop_all(self) -> None:
        for element in list(self._elements):
            element.pause()
            element.reset()
        sd.stop()
        self._logger.info("audio.output.stop_all")

    async def load(self, src: str) -> bytes:
        if src.startswith(BLOB_SCHEME):
            blob = self._registry.resolve(src)
            if blob is None:
                raise DeviceError(f"Audio source has been released: {src}")
            return blob.data
        if src.startswith(("http://", "https://")):
            response = await self._client.get(src)
            response.raise_for_status()
            return response.content
        path = Path(src)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise DeviceError(f"Unable to read audio file {src}: {exc}") from exc

    async def aclose(self) -> None:
        self.stop_all()
        await self._client.aclose()


__all__ = [
    "SoundDeviceAudioElement",
    "SoundDeviceMicrophone",
    "SoundDeviceOutput",
    "SoundDeviceStream",
]
