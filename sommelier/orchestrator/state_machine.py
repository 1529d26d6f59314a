from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Any, Mapping
from uuid import uuid4

from sommelier.audio.playback import DEFAULT_FADE_MS, AudioPlayback
from sommelier.audio.recorder import VoiceRecorder
from sommelier.errors import DeviceError, RateLimited, StreamInterrupted, VoicePipelineError
from sommelier.llm.streaming import StreamingChatClient
from sommelier.llm.types import ChatMessage, ConversationId
from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.cancellation import CancellationToken, TurnCancelled
from sommelier.orchestrator.events import (
    ASSISTANT_STATE,
    CACHED_RESPONSE_ENDED,
    MIC_STATUS,
    PLAY_AUDIO_RESPONSE,
    SUGGESTION_PLAYBACK_ENDED,
    SUGGESTION_PLAYBACK_STARTED,
    TRIGGER_VOICE_ASSISTANT,
    AudioBlob,
    MicStatus,
    State,
)
from sommelier.orchestrator.tasks import cancel_all, spawn
from sommelier.orchestrator.voice_state import VoiceStateStore
from sommelier.persona import Persona
from sommelier.telemetry.logging import bind_turn, clear_turn, get_logger
from sommelier.telemetry.tracing import get_tracer
from sommelier.transcription.base import Transcriber
from sommelier.tts.queue import SpeechQueue


class VoiceAssistantOrchestrator:
    """Drives one conversation: listen, transcribe, stream the reply, speak it.

    Every turn owns a ``CancellationToken``. Work that resumes after an await
    checks its token and silently drops results that belong to a cancelled
    or superseded turn. The orchestrator is the only writer of the voice
    state store and the assistant state.
    """

    def __init__(
        self,
        recorder: VoiceRecorder,
        transcriber: Transcriber,
        chat: StreamingChatClient,
        speech: SpeechQueue,
        playback: AudioPlayback,
        voice_state: VoiceStateStore,
        bus: EventBus,
        persona: Persona | None = None,
        continuous_conversation: bool = False,
        fade_out_ms: int = DEFAULT_FADE_MS,
    ) -> None:
        self._recorder = recorder
        self._transcriber = transcriber
        self._chat = chat
        self._speech = speech
        self._playback = playback
        self._voice_state = voice_state
        self._bus = bus
        self._persona = persona
        self.continuous_conversation = continuous_conversation
        self._fade_out_ms = fade_out_ms

        self._state: State = "IDLE"
        self._token: CancellationToken | None = None
        self._turn_task: asyncio.Task[None] | None = None
        self._messages: list[ChatMessage] = []
        self._conversation_id: ConversationId | None = None
        self._wine_context: dict[str, Any] | None = None
        self._retry_prompt: tuple[str, bool] | None = None
        self._last_spoken: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = get_logger(__name__)
        self._tracer = get_tracer(__name__)

        recorder.on_recording_start = self._on_recording_start
        recorder.on_recording_stop = self._on_recording_stop
        recorder.on_recording_error = self._on_recording_error
        recorder.on_voice_activity = self._on_voice_activity
        speech.on_utterance_start = self._on_utterance_start
        self._unsubscribers = [
            bus.subscribe(TRIGGER_VOICE_ASSISTANT, self._on_trigger),
            bus.subscribe(PLAY_AUDIO_RESPONSE, self._on_play_audio_response),
            bus.subscribe(SUGGESTION_PLAYBACK_STARTED, self._on_suggestion_started),
            bus.subscribe(SUGGESTION_PLAYBACK_ENDED, self._on_suggestion_ended),
        ]

    @property
    def state(self) -> State:
        return self._state

    @property
    def conversation_id(self) -> ConversationId | None:
        return self._conversation_id

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def can_retry(self) -> bool:
        return self._retry_prompt is not None

    async def set_state(self, state: State, payload: dict[str, Any] | None = None) -> None:
        self._state = state
        self._logger.debug("state.transition", state=state, payload=payload)
        await self._bus.publish(ASSISTANT_STATE, {"state": state, "payload": payload or {}})

    async def open(self, wine_context: Mapping[str, Any] | None = None, welcome: bool = True) -> None:
        """Open the assistant sheet, greet the guest, then start listening."""
        if wine_context is not None:
            self._wine_context = dict(wine_context)
        await self.cancel("reopened")
        await self._voice_state.update(show_bottom_sheet=True, show_ask_button=False)
        token = self._begin_turn()
        if welcome and self._persona is not None:
            text = self._persona.welcome_message(self._wine_context)
            try:
                await self._speak_all(text, token)
            except TurnCancelled:
                return
            self._last_spoken = text
            await self._voice_state.update(show_unmute_button=True)
        if not token.cancelled:
            await self.start_listening()

    async def close(self) -> None:
        if self._playback.is_playing:
            await self._playback.fade_out(self._fade_out_ms)
        await self.cancel("closed")
        await self._playback.stop_all()
        await self._voice_state.reset()

    async def start_listening(self) -> None:
        if self._state != "IDLE" or self._recorder.is_recording:
            await self.cancel("restarted")
        token = self._begin_turn()
        await self._publish_mic("listening")
        await self.set_state("LISTENING", {"turn_id": token.turn_id})
        await self._voice_state.update(is_listening=True, show_ask_button=False, show_unmute_button=False)
        await self._recorder.start_recording()

    async def stop_listening(self) -> None:
        await self._recorder.stop_recording()

    async def send_text(self, text: str) -> str | None:
        """Run a typed turn: stream the reply without recording or speaking."""
        return await self._run_prompt(text, speak=False, reason="superseded")

    async def retry(self) -> str | None:
        """Ask the last failed question again, spoken if it was a voice turn."""
        prompt = self._retry_prompt
        if prompt is None:
            return None
        text, speak = prompt
        self._logger.info("turn.retry", speak=speak)
        return await self._run_prompt(text, speak=speak, reason="retry")

    async def unmute(self) -> bool:
        """Replay the last spoken reply; False when there is nothing to replay."""
        text = self._last_spoken
        if text is None:
            return False
        await self.cancel("unmute")
        token = self._begin_turn()
        await self._voice_state.update(show_unmute_button=False, show_ask_button=False)
        try:
            await self._speak_all(text, token)
        except TurnCancelled:
            return False
        await self._voice_state.update(show_ask_button=True)
        clear_turn()
        return True

    async def _run_prompt(self, text: str, speak: bool, reason: str) -> str | None:
        await self.cancel(reason)
        token = self._begin_turn()
        try:
            return await self._respond(text, token, speak=speak)
        except TurnCancelled:
            return None
        except VoicePipelineError as exc:
            await self._fail(exc, token)
            return None

    async def cancel(self, reason: str = "user") -> None:
        """Stop recording, the chat stream and playback, then reset the voice flags."""
        token, self._token = self._token, None
        if token is not None:
            token.cancel(reason)
        turn_task, self._turn_task = self._turn_task, None
        await self._recorder.cancel_recording()
        await self._chat.stop()
        self._speech.cancel()
        self._playback.stop()
        if turn_task is not None and turn_task is not asyncio.current_task() and not turn_task.done():
            turn_task.cancel()
            await asyncio.gather(turn_task, return_exceptions=True)
        sheet_open = self._voice_state.snapshot().show_bottom_sheet
        await self._voice_state.reset()
        if sheet_open:
            await self._voice_state.update(show_bottom_sheet=True, show_ask_button=True)
        if self._state != "IDLE":
            self._logger.info("turn.cancelled", reason=reason)
            await self._publish_mic("idle")
            await self.set_state("IDLE", {"reason": reason})
        clear_turn()

    async def aclose(self) -> None:
        await self.close()
        await cancel_all(self._tasks)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _begin_turn(self) -> CancellationToken:
        if self._token is not None:
            self._token.cancel("superseded")
        token = CancellationToken(str(uuid4()))
        self._token = token
        bind_turn(token.turn_id)
        return token

    async def _on_recording_start(self) -> None:
        self._logger.info("turn.listening")

    async def _on_recording_stop(self, blob: AudioBlob) -> None:
        token = self._token
        if token is None or token.cancelled:
            return
        # Runs outside the recorder's stop so the microphone is released first.
        self._turn_task = asyncio.create_task(self._process_recording(blob, token), name="assistant-turn")

    async def _on_recording_error(self, message: str) -> None:
        token = self._token
        if token is None or token.cancelled:
            return
        error = self._recorder.last_error or DeviceError(message)
        await self._fail(error, token)

    async def _on_voice_activity(self, active: bool) -> None:
        await self._voice_state.update(is_voice_active=active)

    def _on_utterance_start(self, text: str) -> None:
        token = self._token
        if token is None or token.cancelled:
            return
        spawn(self._tasks, self._enter_speaking(token, text), "assistant-enter-speaking", self._logger)

    async def _enter_speaking(self, token: CancellationToken, text: str) -> None:
        if token.cancelled or self._state == "SPEAKING":
            return
        await self._voice_state.update(is_thinking=False, is_responding=True, is_playing_audio=True)
        await self.set_state("SPEAKING", {"turn_id": token.turn_id, "text": text})

    async def _process_recording(self, blob: AudioBlob, token: CancellationToken) -> None:
        try:
            await self._voice_state.update(is_listening=False, is_voice_active=False, is_thinking=True)
            await self._publish_mic("processing")
            await self.set_state("THINKING", {"turn_id": token.turn_id, "stage": "transcribing"})
            with self._tracer.start_as_current_span("assistant.transcribe"):
                transcript = await self._transcriber.transcribe(blob)
            token.raise_if_cancelled()
            if not transcript.strip():
                self._logger.info("turn.empty_transcript")
                await self._finish_turn(token, spoke=False)
                return
            await self._respond(transcript, token, speak=True)
        except TurnCancelled:
            return
        except VoicePipelineError as exc:
            await self._fail(exc, token)

    async def _respond(self, text: str, token: CancellationToken, speak: bool) -> str:
        question = ChatMessage(role="user", content=text)
        self._messages.append(question)
        try:
            reply = await self._stream_reply(text, token, speak)
        except VoicePipelineError:
            self._retry_prompt = (text, speak)
            raise
        finally:
            # A question without a recorded answer never stays in the history.
            if self._messages and self._messages[-1] is question:
                self._messages.pop()
        self._retry_prompt = None
        self._logger.info("turn.reply", chars=len(reply), conversation_id=self._conversation_id)
        if speak:
            self._speech.flush()
            await self._speech.drain()
            token.raise_if_cancelled()
        await self._finish_turn(token, spoke=speak, text=reply)
        return reply

    async def _stream_reply(self, text: str, token: CancellationToken, speak: bool) -> str:
        await self._publish_mic("thinking")
        await self._voice_state.update(is_listening=False, is_thinking=True)
        await self.set_state("THINKING", {"turn_id": token.turn_id, "transcript": text})

        reply = ""
        with self._tracer.start_as_current_span("assistant.chat") as span:
            span.set_attribute("assistant.speak", speak)
            events = self._chat.stream(
                self._conversation_messages(),
                conversation_id=self._conversation_id,
                wine_context=self._wine_context,
                text_only=not speak,
            )
            async with aclosing(events) as stream:
                async for event in stream:
                    token.raise_if_cancelled()
                    if event.type == "first_token":
                        await self._voice_state.update(is_thinking=False, is_responding=True)
                        await self.set_state("STREAMING", {"turn_id": token.turn_id, "delta": event.content or ""})
                        if speak and event.start_tts and event.content:
                            self._speech.push(event.content)
                    elif event.type == "token":
                        if self._state != "STREAMING" and self._state != "SPEAKING":
                            await self.set_state("STREAMING", {"turn_id": token.turn_id})
                        await self._bus.publish(
                            ASSISTANT_STATE,
                            {"state": self._state, "payload": {"turn_id": token.turn_id, "delta": event.content or ""}},
                        )
                        if speak and event.content:
                            self._speech.push(event.content)
                    elif event.type == "complete":
                        reply = self._chat.buffer
                        if event.conversation_id is not None:
                            self._conversation_id = event.conversation_id
                    else:
                        raise StreamInterrupted(event.message, partial=self._chat.buffer)
        token.raise_if_cancelled()
        self._messages.append(ChatMessage(role="assistant", content=reply))
        return reply

    async def _speak_all(self, text: str, token: CancellationToken) -> None:
        await self._voice_state.update(is_responding=True)
        self._speech.say(text)
        await self._speech.drain()
        token.raise_if_cancelled()
        await self._voice_state.update(is_responding=False, is_playing_audio=False)
        if self._state == "SPEAKING":
            await self.set_state("IDLE", {"turn_id": token.turn_id})

    async def _finish_turn(self, token: CancellationToken, spoke: bool, text: str | None = None) -> None:
        if token.cancelled:
            return
        await self._voice_state.update(
            is_listening=False,
            is_thinking=False,
            is_responding=False,
            is_playing_audio=False,
            is_voice_active=False,
            show_ask_button=True,
        )
        if spoke and text:
            self._last_spoken = text
            await self._voice_state.update(show_unmute_button=True)
        await self._publish_mic("idle")
        payload: dict[str, Any] = {"turn_id": token.turn_id}
        if text is not None:
            payload["text"] = text
        await self.set_state("IDLE", payload)
        clear_turn()
        if spoke and self.continuous_conversation and self._voice_state.snapshot().show_bottom_sheet:
            await self.start_listening()

    async def _fail(self, error: VoicePipelineError, token: CancellationToken) -> None:
        if token.cancelled:
            return
        token.cancel("error")
        if self._token is token:
            self._token = None
        await self._recorder.cancel_recording()
        await self._chat.stop()
        self._speech.cancel()
        self._playback.stop()
        partial = error.partial if isinstance(error, StreamInterrupted) else ""
        self._logger.error("turn.failed", error=error.message, kind=type(error).__name__, partial_chars=len(partial))
        payload: dict[str, Any] = {
            "turn_id": token.turn_id,
            "message": error.message,
            "kind": type(error).__name__,
            "partial": partial,
        }
        if isinstance(error, RateLimited):
            payload["retry_after"] = error.retry_after
        await self.set_state("ERROR", payload)
        sheet_open = self._voice_state.snapshot().show_bottom_sheet
        await self._voice_state.reset()
        if sheet_open:
            await self._voice_state.update(show_bottom_sheet=True, show_ask_button=True)
        await self._publish_mic("idle")
        await self.set_state("IDLE", {"turn_id": token.turn_id})
        clear_turn()

    def _conversation_messages(self) -> list[ChatMessage]:
        if self._persona is None:
            return list(self._messages)
        system = ChatMessage(
            role="system",
            content=self._persona.system_message(self._wine_context, optimize_for_speed=True),
        )
        return [system, *self._messages]

    async def _publish_mic(self, status: MicStatus) -> None:
        await self._bus.publish(MIC_STATUS, {"status": status})

    async def _on_trigger(self, detail: dict[str, Any]) -> None:
        await self.open(detail.get("wine_context") or detail.get("wineContext"))

    async def _on_play_audio_response(self, detail: dict[str, Any]) -> None:
        source = detail.get("audio_blob") or detail.get("audio_url")
        if source is None:
            self._logger.warning("cached_response.missing_source")
            return
        await self.cancel("cached_response")
        token = self._begin_turn()
        await self._voice_state.update(is_playing_audio=True, is_responding=True, show_unmute_button=False)
        await self.set_state("SPEAKING", {"turn_id": token.turn_id, "source": "cached"})
        try:
            finished = await self._playback.play_to_end(source)
        except DeviceError as exc:
            await self._fail(exc, token)
            return
        if token.cancelled:
            return
        self._logger.info("cached_response.ended", finished=finished)
        await self._bus.publish(CACHED_RESPONSE_ENDED, {"finished": finished})
        await self._finish_turn(token, spoke=True)

    async def _on_suggestion_started(self, detail: dict[str, Any]) -> None:
        if self._recorder.is_recording:
            await self.cancel("suggestion_playback")
        await self._voice_state.update(is_playing_audio=True)

    async def _on_suggestion_ended(self, detail: dict[str, Any]) -> None:
        await self._voice_state.update(is_playing_audio=False, show_ask_button=True)
        if self.continuous_conversation and self._state == "IDLE" and self._voice_state.snapshot().show_bottom_sheet:
            await self.start_listening()


__all__ = ["VoiceAssistantOrchestrator"]
