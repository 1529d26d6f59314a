from __future__ import annotations

import pytest

from conftest import CountingRegistry, FakeOutput, FakePlatform, FakeSpeechClient, settle
from sommelier.audio.playback import AudioPlayback
from sommelier.errors import ServiceError
from sommelier.tts.queue import SpeechQueue
from sommelier.tts.synthesis import SpeechSynthesisManager, SynthesisVoice

ALEX = SynthesisVoice("alex", "Alex", "en-US")


def build(store, clock, speech_client=None, use_service_voice=True):
    platform = FakePlatform([ALEX])
    output = FakeOutput(auto_finish=True)
    playback = AudioPlayback(output, CountingRegistry(), clock=clock)
    synthesizer = SpeechSynthesisManager(platform, store, clock)
    started: list[str] = []
    errors: list[str] = []
    queue = SpeechQueue(
        playback,
        synthesizer,
        speech_client,
        use_service_voice=use_service_voice,
        on_utterance_start=started.append,
        on_error=errors.append,
    )
    return queue, platform, output, started, errors


@pytest.mark.anyio("asyncio")
async def test_fragments_are_spoken_sentence_by_sentence(store, clock) -> None:
    client = FakeSpeechClient()
    queue, platform, output, started, _ = build(store, clock, client)
    queue.push("This Pinot is li")
    queue.push("ght. It pairs")
    queue.push(" with salmon! Enjoy")
    queue.flush()
    await queue.drain()
    assert client.texts == ["This Pinot is light.", "It pairs with salmon!", "Enjoy"]
    assert started == client.texts
    assert len(output.elements) == 3
    assert platform.spoken == []
    assert queue.idle


@pytest.mark.anyio("asyncio")
async def test_closing_quotes_stay_with_their_sentence(store, clock) -> None:
    client = FakeSpeechClient()
    queue, *_ = build(store, clock, client)
    queue.say('They call it "the king of grapes." Shall we taste?')
    await queue.drain()
    assert client.texts == ['They call it "the king of grapes."', "Shall we taste?"]


@pytest.mark.anyio("asyncio")
async def test_service_failure_falls_back_to_platform_voice(store, clock) -> None:
    client = FakeSpeechClient(failure=ServiceError("Failed to generate speech"))
    queue, platform, _, _, errors = build(store, clock, client)
    queue.say("Swirl the glass. Take a sip.")
    await queue.drain()
    assert client.texts == ["Swirl the glass."]
    assert [u.text for u in platform.spoken] == ["Swirl the glass.", "Take a sip."]
    assert all(u.voice == ALEX for u in platform.spoken)
    assert errors == []


@pytest.mark.anyio("asyncio")
async def test_platform_only_when_service_voice_disabled(store, clock) -> None:
    client = FakeSpeechClient()
    queue, platform, *_ = build(store, clock, client, use_service_voice=False)
    queue.say("Cheers.")
    await queue.drain()
    assert client.texts == []
    assert [u.text for u in platform.spoken] == ["Cheers."]


@pytest.mark.anyio("asyncio")
async def test_cancel_drops_pending_sentences(store, clock) -> None:
    queue, platform, *_ = build(store, clock, use_service_voice=False)
    platform.hold = True
    queue.say("One. Two. Three.")
    await settle()
    assert queue.speaking
    queue.cancel()
    await queue.drain()
    assert [u.text for u in platform.spoken] == ["One."]
    assert queue.idle
    await queue.aclose()


@pytest.mark.anyio("asyncio")
async def test_platform_failure_is_reported(store, clock) -> None:
    queue, platform, _, _, errors = build(store, clock, use_service_voice=False)
    platform.fail_with = RuntimeError("no audio sink")
    queue.say("Hello there.")
    await queue.drain()
    assert errors == ["no audio sink"]
