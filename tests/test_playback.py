from __future__ import annotations

import asyncio

import pytest

from conftest import CountingRegistry, FakeOutput, settle
from sommelier.audio.playback import AudioPlayback
from sommelier.errors import DeviceError
from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.events import DEPLOYMENT_AUDIO_STOPPED, AudioBlob


def build(clock, failures: int = 0, bus: EventBus | None = None):
    output = FakeOutput(failures=failures)
    registry = CountingRegistry()
    return AudioPlayback(output, registry, bus=bus, clock=clock, default_volume=0.8), output, registry


def blob(data: bytes = b"mp3-bytes") -> AudioBlob:
    return AudioBlob(data=data, mime_type="audio/mpeg")


@pytest.mark.anyio("asyncio")
async def test_new_playback_stops_previous(clock) -> None:
    playback, output, registry = build(clock)
    first = await playback.play(blob(b"one"))
    second = await playback.play(blob(b"two"))
    assert first.paused is True
    assert second.paused is False
    assert playback.current is second
    assert playback.tracked == frozenset({second})
    assert len(registry.revoked) == 1
    assert second.volume == 0.8


@pytest.mark.anyio("asyncio")
async def test_blob_url_revoked_exactly_once(clock) -> None:
    playback, output, registry = build(clock)
    ended = []
    element = await playback.play(blob(), on_ended=lambda: ended.append(True))
    assert element.src.startswith("blob:")
    element.finish()
    playback.stop()
    element.finish()
    await playback.stop_all()
    assert registry.revoked == [element.src]
    assert len(registry) == 0
    assert ended == [True]
    assert playback.current is None


@pytest.mark.anyio("asyncio")
async def test_plain_urls_are_not_registered(clock) -> None:
    playback, output, registry = build(clock)
    element = await playback.play("https://cdn.example.com/pairing.mp3")
    assert element.src == "https://cdn.example.com/pairing.mp3"
    playback.stop()
    assert registry.revoked == []


@pytest.mark.anyio("asyncio")
async def test_play_to_end_reports_natural_finish(clock) -> None:
    playback, output, _ = build(clock)
    task = asyncio.create_task(playback.play_to_end(blob()))
    await settle()
    output.elements[-1].finish()
    assert await task is True


@pytest.mark.anyio("asyncio")
async def test_play_to_end_reports_interruption(clock) -> None:
    playback, output, _ = build(clock)
    task = asyncio.create_task(playback.play_to_end(blob()))
    await settle()
    playback.stop()
    assert await task is False


@pytest.mark.anyio("asyncio")
async def test_start_failure_is_retried_once(clock) -> None:
    playback, output, registry = build(clock, failures=1)
    element = await playback.play(blob())
    assert len(output.elements) == 2
    assert element is output.elements[1]
    assert playback.tracked == frozenset({element})
    assert registry.revoked == []


@pytest.mark.anyio("asyncio")
async def test_second_start_failure_raises_device_error(clock) -> None:
    playback, output, registry = build(clock, failures=2)
    with pytest.raises(DeviceError):
        await playback.play(blob())
    assert playback.current is None
    assert playback.tracked == frozenset()
    assert len(registry.revoked) == 1
    assert len(registry) == 0


@pytest.mark.anyio("asyncio")
async def test_stop_all_silences_every_element_and_notifies(clock) -> None:
    bus = EventBus()
    notices = []
    bus.subscribe(DEPLOYMENT_AUDIO_STOPPED, notices.append)
    playback, output, _ = build(clock, bus=bus)
    element = await playback.play(blob())
    await playback.stop_all()
    assert element.paused is True
    assert output.stop_all_calls == 1
    assert playback.tracked == frozenset()
    assert notices == [{}]


@pytest.mark.anyio("asyncio")
async def test_volume_is_clamped_and_applied_live(clock) -> None:
    playback, _, _ = build(clock)
    element = await playback.play(blob())
    playback.set_volume(1.7)
    assert playback.volume == 1.0
    assert element.volume == 1.0
    playback.set_volume(-2)
    assert element.volume == 0.0


@pytest.mark.anyio("asyncio")
async def test_fade_out_ramps_volume_then_stops(clock) -> None:
    playback, _, registry = build(clock)
    element = await playback.play(blob())
    fade = asyncio.create_task(playback.fade_out(300))
    for _ in range(3):
        await clock.advance(50)
    assert 0.0 < element.volume < 0.8
    for _ in range(3):
        await clock.advance(50)
    await fade
    assert element.volume == pytest.approx(0.0)
    assert element.paused is True
    assert playback.current is None
    assert len(registry.revoked) == 1


@pytest.mark.anyio("asyncio")
async def test_pause_and_resume_keep_slot(clock) -> None:
    playback, _, _ = build(clock)
    element = await playback.play(blob())
    playback.pause()
    assert not playback.is_playing
    await playback.resume()
    assert playback.is_playing
    assert playback.current is element
