from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from sommelier.audio.capture import CaptureConstraints
from sommelier.audio.devices import SoundDeviceMicrophone, SoundDeviceOutput
from sommelier.audio.output import BlobURLRegistry
from sommelier.audio.permissions import PermissionGate
from sommelier.audio.playback import AudioPlayback
from sommelier.audio.recorder import VoiceRecorder
from sommelier.audio.vad import VoiceActivityConfig
from sommelier.config import load_settings
from sommelier.errors import CapabilityUnavailable
from sommelier.llm.streaming import StreamingChatClient
from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.state_machine import VoiceAssistantOrchestrator
from sommelier.orchestrator.voice_state import VoiceStateStore
from sommelier.persona import load_persona
from sommelier.service import build_service_client
from sommelier.storage import ClientStore
from sommelier.telemetry.logging import configure_logging, get_logger
from sommelier.telemetry.tracing import configure_tracing
from sommelier.transcription import TranscriptionClient
from sommelier.tts.cache import AudioCache
from sommelier.tts.client import SpeechClient
from sommelier.tts.queue import SpeechQueue
from sommelier.tts.synthesis import Pyttsx3SpeechPlatform, SpeechSynthesisManager
from sommelier.ui.websocket import UIEventBridge

settings = load_settings()
configure_logging(settings.telemetry.log_level)
configure_tracing("sommelier-voice-companion", settings.telemetry.otlp_endpoint)
logger = get_logger(__name__)

app = FastAPI(title="Sommelier Voice Companion")
bus = EventBus()
ui_bridge = UIEventBridge(bus)

origins = {settings.ui.origin}
if "localhost" in settings.ui.origin:
    origins.add(settings.ui.origin.replace("localhost", "127.0.0.1"))
app.include_router(ui_bridge.router)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.on_event("startup")
async def startup_event() -> None:
    app.state.runtime = await bootstrap_runtime()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime:
        await runtime.shutdown()
    await ui_bridge.aclose()


def _runtime() -> "Runtime":
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="runtime unavailable")
    return runtime


class OpenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wine_context: dict[str, Any] | None = Field(default=None, alias="wineContext")
    welcome: bool = True


class TextRequest(BaseModel):
    text: str = Field(min_length=1)


class VolumeRequest(BaseModel):
    volume: float = Field(ge=0.0, le=1.0)


class SkipPromptRequest(BaseModel):
    skip: bool


@app.post("/voice/open")
async def voice_open(request: OpenRequest) -> dict[str, str]:
    await _runtime().orchestrator.open(request.wine_context, welcome=request.welcome)
    logger.info("voice.endpoint.open", wine=bool(request.wine_context))
    return {"status": "ok"}


@app.post("/voice/close")
async def voice_close() -> dict[str, str]:
    await _runtime().orchestrator.close()
    logger.info("voice.endpoint.close")
    return {"status": "ok"}


@app.post("/voice/start")
async def voice_start() -> dict[str, str]:
    await _runtime().orchestrator.start_listening()
    logger.info("voice.endpoint.start")
    return {"status": "ok"}


@app.post("/voice/stop")
async def voice_stop() -> dict[str, str]:
    await _runtime().orchestrator.stop_listening()
    logger.info("voice.endpoint.stop")
    return {"status": "ok"}


@app.post("/voice/cancel")
async def voice_cancel() -> dict[str, str]:
    await _runtime().orchestrator.cancel("user")
    logger.info("voice.endpoint.cancel")
    return {"status": "ok"}


@app.post("/voice/text")
async def voice_text(request: TextRequest) -> dict[str, Any]:
    reply = await _runtime().orchestrator.send_text(request.text)
    return {"text": reply}


@app.post("/voice/retry")
async def voice_retry() -> dict[str, Any]:
    orchestrator = _runtime().orchestrator
    if not orchestrator.can_retry:
        raise HTTPException(status_code=409, detail="Nothing to retry")
    reply = await orchestrator.retry()
    logger.info("voice.endpoint.retry", answered=reply is not None)
    return {"text": reply}


@app.post("/voice/unmute")
async def voice_unmute() -> dict[str, bool]:
    replayed = await _runtime().orchestrator.unmute()
    logger.info("voice.endpoint.unmute", replayed=replayed)
    return {"replayed": replayed}


@app.get("/voice/state")
async def voice_state() -> dict[str, Any]:
    runtime = _runtime()
    return {"state": runtime.orchestrator.state, "voice": runtime.voice_state.snapshot().to_dict()}


@app.post("/voice/volume")
async def voice_volume(request: VolumeRequest) -> dict[str, float]:
    playback = _runtime().playback
    playback.set_volume(request.volume)
    return {"volume": playback.volume}


@app.get("/voice/permission")
async def voice_permission() -> dict[str, bool]:
    gate = _runtime().gate
    return {"granted": await gate.check_permission(), "skip_prompt": gate.should_skip_prompt()}


@app.post("/voice/permission/skip")
async def voice_permission_skip(request: SkipPromptRequest) -> dict[str, bool]:
    gate = _runtime().gate
    gate.set_skip_prompt(request.skip)
    return {"skip_prompt": gate.skip_prompt_requested()}


class Runtime:
    def __init__(
        self,
        orchestrator: VoiceAssistantOrchestrator,
        gate: PermissionGate,
        playback: AudioPlayback,
        voice_state: VoiceStateStore,
        speech: SpeechQueue,
        speech_client: SpeechClient,
        output: SoundDeviceOutput,
        platform: Pyttsx3SpeechPlatform,
    ) -> None:
        self.orchestrator = orchestrator
        self.gate = gate
        self.playback = playback
        self.voice_state = voice_state
        self._speech = speech
        self._speech_client = speech_client
        self._output = output
        self._platform = platform
        self._logger = get_logger(__name__)

    async def shutdown(self) -> None:
        self._logger.info("runtime.shutdown.start")
        await self.orchestrator.aclose()
        await self._speech.aclose()
        self._platform.close()
        await self._output.aclose()
        # Speech and transcription share one service client.
        await self._speech_client.aclose()
        self._logger.info("runtime.shutdown.complete")


async def bootstrap_runtime() -> Runtime:
    store = ClientStore(settings.ui.state_path)
    recorder_settings = settings.recorder
    constraints = CaptureConstraints(sample_rate=recorder_settings.sample_rate, channels=recorder_settings.channels)
    microphone = SoundDeviceMicrophone(recorder_settings.input_device)
    gate = PermissionGate(microphone, store, constraints=constraints)
    vad = settings.vad
    recorder = VoiceRecorder(
        microphone,
        gate,
        bus,
        vad_config=VoiceActivityConfig(
            silence_threshold=vad.silence_threshold,
            voice_threshold=vad.voice_threshold,
            silence_duration_ms=vad.silence_duration_ms,
            consecutive_silence_limit=vad.consecutive_silence_limit,
        ),
        constraints=constraints,
        timeslice_ms=recorder_settings.timeslice_ms,
    )

    service = settings.service
    client = build_service_client(service)
    transcriber = TranscriptionClient(client, path=service.transcribe_path)
    chat = StreamingChatClient(client, path=service.chat_path)
    speech_settings = settings.speech
    speech_client = SpeechClient(
        client,
        AudioCache(speech_settings.cache_size),
        path=service.tts_path,
        default_voice=speech_settings.tts_voice,
    )

    registry = BlobURLRegistry()
    output = SoundDeviceOutput(registry, device=settings.playback.output_device)
    playback = AudioPlayback(output, registry, bus, default_volume=settings.playback.default_volume)

    try:
        platform = Pyttsx3SpeechPlatform()
    except CapabilityUnavailable as exc:
        logger.error("speech.platform.unavailable", error=exc.message)
        await output.aclose()
        await client.aclose()
        raise
    synthesizer = SpeechSynthesisManager(platform, store)
    await synthesizer.initialize()
    speech = SpeechQueue(playback, synthesizer, speech_client, use_service_voice=speech_settings.use_service_voice)

    voice_state = VoiceStateStore(bus)
    orchestrator = VoiceAssistantOrchestrator(
        recorder,
        transcriber,
        chat,
        speech,
        playback,
        voice_state,
        bus,
        persona=load_persona(),
        continuous_conversation=speech_settings.continuous_conversation,
        fade_out_ms=settings.playback.fade_out_ms,
    )
    runtime = Runtime(
        orchestrator,
        gate,
        playback,
        voice_state,
        speech,
        speech_client,
        output,
        platform,
    )
    logger.info(
        "runtime.started",
        service=service.base_url,
        voice=synthesizer.locked_voice.name if synthesizer.locked_voice else None,
    )
    return runtime


def run(host: str = "127.0.0.1", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run(app, host=host, port=port)


__all__ = ["app", "bootstrap_runtime", "Runtime", "run"]
