from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from sommelier.audio.output import AudioElement, AudioElementFactory, BlobURLRegistry
from sommelier.errors import DeviceError
from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.clock import CLOCK, Clock
from sommelier.orchestrator.events import DEPLOYMENT_AUDIO_STOPPED, MPEG_MIME_TYPE, AudioBlob
from sommelier.orchestrator.tasks import spawn
from sommelier.telemetry.logging import get_logger

PlaybackSource = Union[str, bytes, AudioBlob]

FADE_STEP_MS = 50
DEFAULT_FADE_MS = 300


@dataclass(slots=True)
class _Playback:
    url: str | None
    element: AudioElement | None = None
    released: bool = False
    ended: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


class AudioPlayback:
    """Owns the single current playback slot plus every element it ever started."""

    def __init__(
        self,
        output: AudioElementFactory,
        registry: BlobURLRegistry,
        bus: EventBus | None = None,
        clock: Clock = CLOCK,
        default_volume: float = 1.0,
    ) -> None:
        self._output = output
        self._registry = registry
        self._bus = bus
        self._clock = clock
        self._volume = _clamp(default_volume)
        self._current: _Playback | None = None
        self._tracked: set[AudioElement] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = get_logger(__name__)

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def current(self) -> Optional[AudioElement]:
        return self._current.element if self._current else None

    @property
    def is_playing(self) -> bool:
        element = self.current
        return element is not None and not element.paused

    @property
    def tracked(self) -> frozenset[AudioElement]:
        return frozenset(self._tracked)

    async def play(self, source: PlaybackSource, on_ended: Callable[[], Any] | None = None) -> AudioElement:
        playback = await self._start(source, on_ended)
        if playback.element is None:
            raise DeviceError("Audio playback did not start")
        return playback.element

    async def play_to_end(self, source: PlaybackSource) -> bool:
        """Play and wait until the slot is released; True only when the audio finished on its own."""
        playback = await self._start(source, None)
        await playback.done.wait()
        return playback.ended

    async def _start(self, source: PlaybackSource, on_ended: Callable[[], Any] | None) -> _Playback:
        self.stop()
        url: str | None = None
        if isinstance(source, AudioBlob):
            url = self._registry.create(source)
        elif isinstance(source, (bytes, bytearray)):
            url = self._registry.create(AudioBlob(data=bytes(source), mime_type=MPEG_MIME_TYPE))
        src = url or str(source)
        playback = _Playback(url=url)
        self._current = playback

        for attempt in range(2):
            element = self._output.create(src)
            element.volume = self._volume
            element.on_ended = lambda: self._handle_ended(playback, on_ended)
            element.on_error = lambda exc: self._handle_error(playback, exc)
            playback.element = element
            self._tracked.add(element)
            try:
                await element.play()
                break
            except Exception as exc:
                self._logger.warning("playback.start_failed", attempt=attempt, error=str(exc))
                element.pause()
                self._tracked.discard(element)
                if attempt or self._current is not playback:
                    self._release(playback)
                    raise DeviceError(f"Audio playback failed: {exc}") from exc

        if self._current is not playback:
            # Superseded while starting; the newer playback owns the slot.
            element.pause()
            element.reset()
            self._tracked.discard(element)
            self._release(playback)
            return playback
        self._logger.info("playback.started", src=src)
        return playback

    def stop(self) -> None:
        if self._current is not None:
            self._release(self._current)

    async def stop_all(self) -> None:
        self.stop()
        for element in list(self._tracked):
            element.pause()
            element.reset()
        self._tracked.clear()
        self._output.stop_all()
        self._logger.info("playback.stop_all")
        if self._bus is not None:
            await self._bus.publish(DEPLOYMENT_AUDIO_STOPPED, {})

    async def fade_out(self, duration_ms: int = DEFAULT_FADE_MS) -> None:
        playback = self._current
        if playback is None or playback.element is None:
            return
        element = playback.element
        start_volume = element.volume
        steps = max(1, duration_ms // FADE_STEP_MS)
        for step in range(1, steps + 1):
            await self._clock.sleep(FADE_STEP_MS / 1000)
            if self._current is not playback:
                return
            element.volume = start_volume * (1.0 - step / steps)
        self._release(playback)

    def set_volume(self, volume: float) -> None:
        self._volume = _clamp(volume)
        if self.current is not None:
            self.current.volume = self._volume

    def pause(self) -> None:
        if self.current is not None:
            self.current.pause()

    async def resume(self) -> None:
        element = self.current
        if element is not None and element.paused:
            await element.play()

    def _handle_ended(self, playback: _Playback, on_ended: Callable[[], Any] | None) -> None:
        if playback.released:
            return
        playback.ended = True
        self._release(playback)
        self._logger.info("playback.ended")
        if on_ended is not None:
            result = on_ended()
            if inspect.isawaitable(result):
                spawn(self._tasks, result, "playback-on-ended", self._logger)

    def _handle_error(self, playback: _Playback, exc: Exception) -> None:
        if playback.released:
            return
        self._logger.error("playback.error", error=str(exc))
        self._release(playback)

    def _release(self, playback: _Playback) -> None:
        if playback.released:
            return
        playback.released = True
        element = playback.element
        if element is not None:
            element.pause()
            element.reset()
            self._tracked.discard(element)
        if playback.url is not None:
            self._registry.revoke(playback.url)
        if self._current is playback:
            self._current = None
        playback.done.set()


def _clamp(volume: float) -> float:
    return min(max(float(volume), 0.0), 1.0)


__all__ = ["AudioPlayback", "PlaybackSource", "FADE_STEP_MS", "DEFAULT_FADE_MS"]
