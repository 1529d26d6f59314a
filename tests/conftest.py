from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest

from sommelier.audio.capture import CaptureConstraints
from sommelier.audio.output import BlobURLRegistry
from sommelier.orchestrator.clock import Clock
from sommelier.orchestrator.events import AudioBlob
from sommelier.storage import ClientStore
from sommelier.tts.synthesis import SynthesisVoice, Utterance


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock(Clock):
    """Manually advanced clock; sleepers wake only when ``advance`` passes their deadline."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now = now_ms
        self.mono = 0.0
        self._sleepers: list[tuple[float, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self.now

    def monotonic_ms(self) -> float:
        return self.mono

    async def sleep(self, seconds: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.mono + seconds * 1000, future))
        await future

    async def advance(self, ms: float) -> None:
        await settle()
        self.mono += ms
        self.now += int(ms)
        due = [entry for entry in self._sleepers if entry[0] <= self.mono]
        self._sleepers = [entry for entry in self._sleepers if entry[0] > self.mono]
        for _, future in due:
            if not future.done():
                future.set_result(None)
        await settle()


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeStream:
    def __init__(self, sample_rate: int = 16_000, channels: int = 1) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.stopped = False
        self._listeners: list[Callable[[np.ndarray], None]] = []

    def add_listener(self, listener: Callable[[np.ndarray], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def emit(self, frame: np.ndarray) -> None:
        for listener in list(self._listeners):
            listener(frame)

    def stop(self) -> None:
        self.stopped = True


class FakeMicrophone:
    """Scriptable microphone: ``failures`` are raised by successive ``open`` calls."""

    def __init__(self, status: str | None = None, failures: list[Exception] | None = None) -> None:
        self.status = status
        self.failures = list(failures or [])
        self.opened: list[CaptureConstraints | None] = []
        self.streams: list[FakeStream] = []

    async def query_permission(self) -> str | None:
        return self.status

    async def open(self, constraints: CaptureConstraints | None = None) -> FakeStream:
        self.opened.append(constraints)
        if self.failures:
            raise self.failures.pop(0)
        stream = FakeStream()
        self.streams.append(stream)
        return stream


class FakeElement:
    def __init__(self, src: str, fail: bool = False, auto_finish: bool = False) -> None:
        self.src = src
        self.auto_finish = auto_finish
        self.volume = 1.0
        self.paused = True
        self.on_ended = None
        self.on_error = None
        self.position = 0.0
        self.fail = fail
        self.play_calls = 0

    @property
    def current_time(self) -> float:
        return self.position

    async def play(self) -> None:
        self.play_calls += 1
        if self.fail:
            raise RuntimeError("output device busy")
        self.paused = False
        if self.auto_finish:
            asyncio.get_running_loop().call_soon(self.finish)

    def pause(self) -> None:
        self.paused = True

    def reset(self) -> None:
        self.position = 0.0

    def finish(self) -> None:
        self.paused = True
        if self.on_ended is not None:
            self.on_ended()


class FakeOutput:
    def __init__(self, failures: int = 0, auto_finish: bool = False) -> None:
        self.failures = failures
        self.auto_finish = auto_finish
        self.elements: list[FakeElement] = []
        self.stop_all_calls = 0

    def create(self, src: str) -> FakeElement:
        fail = self.failures > 0
        if fail:
            self.failures -= 1
        element = FakeElement(src, fail=fail, auto_finish=self.auto_finish)
        self.elements.append(element)
        return element

    def stop_all(self) -> None:
        self.stop_all_calls += 1


class CountingRegistry(BlobURLRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.revoked: list[str] = []

    def revoke(self, url: str) -> bool:
        self.revoked.append(url)
        return super().revoke(url)


class FakePlatform:
    """Platform speech double; with ``hold`` set, an utterance lasts until ``cancel``."""

    def __init__(self, voices: list[SynthesisVoice] | None = None) -> None:
        self.voices = list(voices or [])
        self.spoken: list[Utterance] = []
        self.cancels = 0
        self.listeners: list[Callable[[], None]] = []
        self.fail_with: Exception | None = None
        self.hold = False
        self._release: asyncio.Event | None = None

    def get_voices(self) -> list[SynthesisVoice]:
        return list(self.voices)

    def on_voices_changed(self, listener: Callable[[], None]) -> Callable[[], None]:
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def announce(self, voices: list[SynthesisVoice]) -> None:
        self.voices = list(voices)
        for listener in list(self.listeners):
            listener()

    async def speak(self, utterance: Utterance) -> None:
        self.spoken.append(utterance)
        if self.hold:
            self._release = asyncio.Event()
            await self._release.wait()
            self._release = None
        if self.fail_with is not None:
            raise self.fail_with

    def cancel(self) -> None:
        self.cancels += 1
        if self._release is not None:
            self._release.set()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> ClientStore:
    return ClientStore(tmp_path / "client_state.json")


class FakeSpeechClient:
    def __init__(self, failure: Exception | None = None) -> None:
        self.failure = failure
        self.texts: list[str] = []

    async def synthesize(self, text: str, voice: str | None = None) -> AudioBlob:
        self.texts.append(text)
        if self.failure is not None:
            raise self.failure
        return AudioBlob(data=text.encode(), mime_type="audio/mpeg")
