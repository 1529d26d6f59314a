from __future__ import annotations

import asyncio
import queue
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import pyttsx3

from sommelier.errors import CapabilityUnavailable
from sommelier.orchestrator.clock import CLOCK, Clock
from sommelier.storage import LOCKED_VOICE_NAME_KEY, LOCKED_VOICE_URI_KEY, ClientStore
from sommelier.telemetry.logging import get_logger

DEFAULT_LANG = "en-US"
VOICE_POLL_ATTEMPTS = 10
VOICE_POLL_INTERVAL_MS = 250


@dataclass(frozen=True, slots=True)
class SynthesisVoice:
    voice_uri: str
    name: str
    lang: str
    default: bool = False


@dataclass(frozen=True, slots=True)
class Utterance:
    text: str
    voice: SynthesisVoice | None = None
    rate: float = 1.0
    pitch: float = 1.0
    lang: str = DEFAULT_LANG


class SpeechPlatform(Protocol):
    def get_voices(self) -> list[SynthesisVoice]: ...

    def on_voices_changed(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a listener that may be invoked from any thread."""
        ...

    async def speak(self, utterance: Utterance) -> None:
        """Return once the utterance has finished or was cancelled."""
        ...

    def cancel(self) -> None: ...


def select_voice(
    voices: Sequence[SynthesisVoice],
    persisted_uri: str | None = None,
    persisted_name: str | None = None,
) -> SynthesisVoice | None:
    """Pick the narration voice; the first matching rule wins."""
    if not voices:
        return None

    def first(predicate: Callable[[SynthesisVoice], bool]) -> SynthesisVoice | None:
        return next((voice for voice in voices if predicate(voice)), None)

    def english(voice: SynthesisVoice) -> bool:
        return voice.lang.lower().startswith("en")

    rules: list[Callable[[SynthesisVoice], bool]] = [
        lambda v: bool(persisted_uri) and v.voice_uri == persisted_uri,
        lambda v: bool(persisted_name) and v.name == persisted_name,
        lambda v: v.name == "Google UK English Male",
        lambda v: v.name == "Google US English Male",
        lambda v: "Google" in v.name and "Male" in v.name and english(v),
        lambda v: "Male" in v.name and english(v),
        lambda v: english(v) and "female" not in v.name.lower(),
    ]
    for rule in rules:
        match = first(rule)
        if match is not None:
            return match
    return voices[0]


class SpeechSynthesisManager:
    """Locks one narration voice per session and speaks through it.

    The lock is resolved once, persisted by identifier and name, and never
    re-evaluated while the manager lives. When no voice ever shows up the
    manager keeps working in degraded mode with the platform default voice.
    """

    def __init__(
        self,
        platform: SpeechPlatform,
        store: ClientStore,
        clock: Clock = CLOCK,
        poll_attempts: int = VOICE_POLL_ATTEMPTS,
        poll_interval_ms: int = VOICE_POLL_INTERVAL_MS,
    ) -> None:
        self._platform = platform
        self._store = store
        self._clock = clock
        self._poll_attempts = poll_attempts
        self._poll_interval_ms = poll_interval_ms
        self._locked: SynthesisVoice | None = None
        self._resolved = False
        self._init_lock = asyncio.Lock()
        self._generation = 0
        self._speaking = False
        self._logger = get_logger(__name__)

    @property
    def locked_voice(self) -> SynthesisVoice | None:
        return self._locked

    @property
    def degraded(self) -> bool:
        return self._resolved and self._locked is None

    @property
    def speaking(self) -> bool:
        return self._speaking

    async def initialize(self) -> SynthesisVoice | None:
        if self._resolved:
            return self._locked
        async with self._init_lock:
            if self._resolved:
                return self._locked
            voices = await self._wait_for_voices()
            voice = select_voice(
                voices,
                persisted_uri=self._store.get(LOCKED_VOICE_URI_KEY),
                persisted_name=self._store.get(LOCKED_VOICE_NAME_KEY),
            )
            self._resolved = True
            if voice is None:
                self._logger.warning("speech.voice.degraded", attempts=self._poll_attempts)
                return None
            self._locked = voice
            self._store.set(LOCKED_VOICE_URI_KEY, voice.voice_uri)
            self._store.set(LOCKED_VOICE_NAME_KEY, voice.name)
            self._logger.info("speech.voice.locked", name=voice.name, uri=voice.voice_uri, lang=voice.lang)
            return voice

    async def speak(
        self,
        text: str,
        on_end: Callable[[], Any] | None = None,
        on_error: Callable[[str], Any] | None = None,
    ) -> None:
        self.cancel()
        await self.initialize()
        self._generation += 1
        generation = self._generation
        utterance = Utterance(text=text, voice=self._locked, rate=1.0, pitch=1.0, lang=DEFAULT_LANG)
        self._speaking = True
        try:
            await self._platform.speak(utterance)
        except Exception as exc:
            if generation == self._generation:
                self._logger.error("speech.utterance.failed", error=str(exc))
                if on_error is not None:
                    on_error(str(exc))
            return
        finally:
            if generation == self._generation:
                self._speaking = False
        if generation == self._generation and on_end is not None:
            on_end()

    def cancel(self) -> None:
        self._generation += 1
        self._speaking = False
        self._platform.cancel()

    async def _wait_for_voices(self) -> list[SynthesisVoice]:
        voices = self._platform.get_voices()
        if voices:
            return voices
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        remove = self._platform.on_voices_changed(lambda: loop.call_soon_threadsafe(changed.set))
        try:
            for attempt in range(self._poll_attempts):
                waiter = asyncio.ensure_future(changed.wait())
                sleeper = asyncio.ensure_future(self._clock.sleep(self._poll_interval_ms / 1000))
                _, pending = await asyncio.wait({waiter, sleeper}, return_when=asyncio.FIRST_COMPLETED)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                changed.clear()
                voices = self._platform.get_voices()
                if voices:
                    self._logger.info("speech.voices.loaded", attempt=attempt + 1, count=len(voices))
                    return voices
        finally:
            remove()
        return []


def _voice_lang(raw: Any) -> str:
    languages = getattr(raw, "languages", None) or []
    for language in languages:
        if isinstance(language, bytes):
            language = language.decode("utf-8", errors="ignore")
        cleaned = "".join(ch for ch in str(language) if ch.isprintable()).strip()
        if cleaned:
            return cleaned.replace("_", "-")
    return ""


class Pyttsx3SpeechPlatform:
    """Platform voices through pyttsx3; the engine lives on one worker thread."""

    def __init__(self, driver_name: str | None = None, ready_timeout: float = 10.0) -> None:
        self._commands: "queue.Queue[Optional[tuple[str, Any]]]" = queue.Queue()
        self._voices: list[SynthesisVoice] = []
        self._listeners: list[Callable[[], None]] = []
        self._engine: Any = None
        self._base_rate = 200
        self._init_error: BaseException | None = None
        self._ready = threading.Event()
        self._logger = get_logger(__name__)
        self._thread = threading.Thread(target=self._worker, args=(driver_name,), name="pyttsx3", daemon=True)
        self._thread.start()
        if not self._ready.wait(ready_timeout):
            raise CapabilityUnavailable("Speech synthesis engine did not start")
        if self._init_error is not None:
            raise CapabilityUnavailable(f"Speech synthesis unavailable: {self._init_error}") from self._init_error

    def get_voices(self) -> list[SynthesisVoice]:
        return list(self._voices)

    def on_voices_changed(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def speak(self, utterance: Utterance) -> None:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        self._commands.put(("speak", (utterance, future, loop)))
        await future

    def cancel(self) -> None:
        engine = self._engine
        if engine is not None:
            engine.stop()

    def close(self) -> None:
        self.cancel()
        self._commands.put(None)
        self._thread.join(timeout=1)

    def _worker(self, driver_name: str | None) -> None:
        try:
            engine = pyttsx3.init(driverName=driver_name)
            self._base_rate = int(engine.getProperty("rate") or 200)
            self._engine = engine
            self._load_voices(engine)
        except Exception as exc:
            self._init_error = exc
            self._ready.set()
            return
        self._ready.set()
        while True:
            command = self._commands.get()
            if command is None:
                break
            _, payload = command
            utterance, future, loop = payload
            try:
                if utterance.voice is not None:
                    engine.setProperty("voice", utterance.voice.voice_uri)
                engine.setProperty("rate", int(self._base_rate * utterance.rate))
                engine.say(utterance.text)
                engine.runAndWait()
            except Exception as exc:
                loop.call_soon_threadsafe(_settle, future, exc)
            else:
                loop.call_soon_threadsafe(_settle, future, None)

    def _load_voices(self, engine: Any) -> None:
        current = engine.getProperty("voice")
        voices = [
            SynthesisVoice(
                voice_uri=str(raw.id),
                name=str(getattr(raw, "name", "") or raw.id),
                lang=_voice_lang(raw),
                default=raw.id == current,
            )
            for raw in engine.getProperty("voices") or []
        ]
        changed = voices != self._voices
        self._voices = voices
        self._logger.info("speech.platform.voices", count=len(voices))
        if changed:
            for listener in list(self._listeners):
                listener()


def _settle(future: asyncio.Future[None], error: BaseException | None) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


__all__ = [
    "Pyttsx3SpeechPlatform",
    "SpeechPlatform",
    "SpeechSynthesisManager",
    "SynthesisVoice",
    "Utterance",
    "select_voice",
]
