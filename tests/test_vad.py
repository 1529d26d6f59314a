from __future__ import annotations

import numpy as np
import pytest

from conftest import FakeClock, FakeStream
from sommelier.audio.vad import SpectrumAnalyser, VoiceActivityConfig, VoiceActivityDetector
from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.events import VOICE_VOLUME


def make_detector(**overrides):
    calls: dict[str, int] = {"voice": 0, "silence": 0, "complete": 0}

    def bump(key: str):
        def inner() -> None:
            calls[key] += 1

        return inner

    detector = VoiceActivityDetector(
        VoiceActivityConfig(**overrides),
        on_voice_detected=bump("voice"),
        on_silence_detected=bump("silence"),
        on_recording_complete=bump("complete"),
    )
    return detector, calls


def test_each_full_silence_window_counts_once() -> None:
    detector, calls = make_detector()
    assert detector.process(0.0, 0) is False
    assert detector.process(0.0, 1500) is False
    assert detector.consecutive_silence_count == 0
    assert detector.process(0.0, 1501) is False
    assert detector.consecutive_silence_count == 1
    assert detector.process(0.0, 3002) is False
    assert detector.consecutive_silence_count == 2
    assert detector.process(0.0, 4503) is True
    assert calls["complete"] == 1


def test_voice_resets_window_and_count() -> None:
    detector, calls = make_detector()
    detector.process(0.0, 0)
    detector.process(0.0, 1600)
    assert detector.consecutive_silence_count == 1
    detector.process(42.0, 1700)
    assert detector.consecutive_silence_count == 0
    assert calls["voice"] == 1
    detector.process(0.0, 1800)
    detector.process(0.0, 3000)
    assert detector.consecutive_silence_count == 0


def test_energy_equal_to_threshold_is_silence() -> None:
    detector, calls = make_detector(voice_threshold=5.0)
    detector.process(5.0, 0)
    assert calls == {"voice": 0, "silence": 1, "complete": 0}


def test_completion_fires_once() -> None:
    detector, calls = make_detector(silence_duration_ms=100, consecutive_silence_limit=1)
    detector.process(0.0, 0)
    assert detector.process(0.0, 101) is True
    assert detector.process(0.0, 300) is True
    assert detector.process(99.0, 400) is True
    assert calls["complete"] == 1


def test_same_sequence_gives_same_outcome() -> None:
    samples = [(0.0, 0), (12.0, 100), (0.0, 200), (0.0, 1800), (0.0, 3400), (0.0, 5000)]
    outcomes = []
    for _ in range(2):
        detector, calls = make_detector()
        outcomes.append(([detector.process(e, t) for e, t in samples], dict(calls)))
    assert outcomes[0] == outcomes[1]
    assert outcomes[0][0][-1] is True


def test_analyser_reports_energy_for_loud_tone() -> None:
    stream = FakeStream()
    analyser = SpectrumAnalyser(stream)
    assert analyser.average_energy() == 0.0
    t = np.arange(512) / stream.sample_rate
    tone = (0.8 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    for _ in range(10):
        stream.emit(tone)
        energy = analyser.average_energy()
    assert energy > 5.0
    analyser.close()
    stream.emit(np.zeros(256, dtype=np.float32))


@pytest.mark.anyio("asyncio")
async def test_polling_publishes_volume_and_completes(clock: FakeClock) -> None:
    bus = EventBus()
    volumes = []
    bus.subscribe(VOICE_VOLUME, volumes.append)
    completed = []
    detector = VoiceActivityDetector(
        VoiceActivityConfig(silence_duration_ms=200, consecutive_silence_limit=2),
        bus=bus,
        clock=clock,
        on_recording_complete=lambda: completed.append(True),
    )
    detector.start(FakeStream())
    assert detector.active
    for _ in range(8):
        await clock.advance(100)
    assert completed == [True]
    assert volumes[0] == {"volume": 0.0, "threshold": 5.0, "silenceThreshold": 5.0}
    assert not detector.active
    await detector.stop()
    await detector.stop()
