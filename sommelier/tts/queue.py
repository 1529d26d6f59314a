from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from typing import Any

from sommelier.audio.playback import AudioPlayback
from sommelier.errors import VoicePipelineError
from sommelier.telemetry.logging import get_logger
from sommelier.tts.client import SpeechClient
from sommelier.tts.synthesis import SpeechSynthesisManager

# Sentence punctuation (plus closing quotes or brackets) followed by whitespace.
_SENTENCE_END = re.compile(r"[.!?]+[\"')\]]*\s+")


class SpeechQueue:
    """Speaks a streamed reply sentence by sentence, strictly in order.

    Text arrives in arbitrary fragments through ``push``; each complete
    sentence is queued as soon as it is seen so speech can begin on the first
    tokens. Sentences go to the service voice when enabled and fall back to
    the locked platform voice for the rest of the turn once the service fails.
    """

    def __init__(
        self,
        playback: AudioPlayback,
        synthesizer: SpeechSynthesisManager,
        speech_client: SpeechClient | None = None,
        use_service_voice: bool = True,
        on_utterance_start: Callable[[str], Any] | None = None,
        on_error: Callable[[str], Any] | None = None,
    ) -> None:
        self._playback = playback
        self._synthesizer = synthesizer
        self._speech_client = speech_client
        self._use_service_voice = use_service_voice and speech_client is not None
        self.on_utterance_start = on_utterance_start
        self.on_error = on_error
        self._queue: asyncio.Queue[tuple[str, int]] = asyncio.Queue()
        self._pending = ""
        self._generation = 0
        self._service_failed = False
        self._worker: asyncio.Task[None] | None = None
        self._speaking = False
        self._logger = get_logger(__name__)

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def idle(self) -> bool:
        return not self._speaking and self._queue.empty() and not self._pending

    def push(self, fragment: str) -> None:
        self._pending += fragment
        while True:
            match = _SENTENCE_END.search(self._pending)
            if match is None:
                return
            sentence = self._pending[: match.end()].strip()
            self._pending = self._pending[match.end() :]
            if sentence:
                self._enqueue(sentence)

    def flush(self) -> None:
        remainder, self._pending = self._pending.strip(), ""
        if remainder:
            self._enqueue(remainder)

    def say(self, text: str) -> None:
        self.push(text)
        self.flush()

    async def drain(self) -> None:
        await self._queue.join()

    def cancel(self) -> None:
        self._generation += 1
        self._pending = ""
        self._service_failed = False
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._playback.stop()
        self._synthesizer.cancel()

    async def aclose(self) -> None:
        self.cancel()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)

    def _enqueue(self, sentence: str) -> None:
        self._queue.put_nowait((sentence, self._generation))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="speech-queue")

    async def _run(self) -> None:
        while True:
            sentence, generation = await self._queue.get()
            try:
                if generation == self._generation:
                    await self._speak(sentence, generation)
            except VoicePipelineError as exc:
                self._logger.error("speech.queue.failed", error=exc.message)
                if self.on_error is not None:
                    self.on_error(exc.message)
            finally:
                self._speaking = False
                self._queue.task_done()

    async def _speak(self, sentence: str, generation: int) -> None:
        self._speaking = True
        if self.on_utterance_start is not None:
            self.on_utterance_start(sentence)
        client = self._speech_client
        if client is not None and self._use_service_voice and not self._service_failed:
            try:
                blob = await client.synthesize(sentence)
                if generation != self._generation:
                    return
                await self._playback.play_to_end(blob)
                return
            except VoicePipelineError as exc:
                if generation != self._generation:
                    return
                self._service_failed = True
                self._logger.warning("speech.queue.service_failed", error=exc.message)

        failures: list[str] = []
        await self._synthesizer.speak(sentence, on_error=failures.append)
        if failures and generation == self._generation:
            raise VoicePipelineError(failures[0])


__all__ = ["SpeechQueue"]
