from __future__ import annotations

import json

import pytest

from conftest import FakeMicrophone
from sommelier.audio.capture import CaptureConstraints, ConstraintsNotSupported
from sommelier.audio.permissions import PERMISSION_TTL_MS, PermissionGate
from sommelier.storage import PERMISSION_KEY, SKIP_PROMPT_KEY, ClientStore


def test_saved_permission_round_trips_through_store(store, clock) -> None:
    gate = PermissionGate(FakeMicrophone(), store, clock)
    gate.save(True)
    raw = json.loads(store.get(PERMISSION_KEY))
    assert raw == {"granted": True, "timestamp": clock.now}
    assert gate.should_skip_prompt() is True


def test_saved_permission_expires_after_thirty_days(store, clock) -> None:
    gate = PermissionGate(FakeMicrophone(), store, clock)
    gate.save(True)
    clock.now += PERMISSION_TTL_MS
    assert gate.saved_permission() is not None
    clock.now += 1
    assert gate.saved_permission() is None
    assert store.get(PERMISSION_KEY) is None
    assert gate.should_skip_prompt() is False


def test_denied_permission_does_not_skip_prompt(store, clock) -> None:
    gate = PermissionGate(FakeMicrophone(), store, clock)
    gate.save(False)
    assert gate.saved_permission().granted is False
    assert gate.should_skip_prompt() is False


def test_unparsable_cache_entry_is_cleared(store, clock) -> None:
    store.set(PERMISSION_KEY, "{not json")
    gate = PermissionGate(FakeMicrophone(), store, clock)
    assert gate.saved_permission() is None
    assert store.get(PERMISSION_KEY) is None


def test_skip_prompt_flag_is_persisted(tmp_path, clock) -> None:
    path = tmp_path / "state.json"
    gate = PermissionGate(FakeMicrophone(), ClientStore(path), clock)
    gate.set_skip_prompt(True)
    reloaded = ClientStore(path)
    assert reloaded.get(SKIP_PROMPT_KEY) == "true"
    assert PermissionGate(FakeMicrophone(), reloaded, clock).skip_prompt_requested() is True


@pytest.mark.anyio("asyncio")
async def test_check_permission_uses_platform_state(store, clock) -> None:
    microphone = FakeMicrophone(status="granted")
    gate = PermissionGate(microphone, store, clock)
    assert await gate.check_permission() is True
    assert microphone.opened == []
    assert gate.saved_permission().granted is True


@pytest.mark.anyio("asyncio")
async def test_check_permission_denied_is_cached(store, clock) -> None:
    gate = PermissionGate(FakeMicrophone(status="denied"), store, clock)
    assert await gate.check_permission() is False
    assert gate.saved_permission().granted is False


@pytest.mark.anyio("asyncio")
async def test_check_permission_opens_device_when_platform_is_silent(store, clock) -> None:
    microphone = FakeMicrophone(status=None)
    gate = PermissionGate(microphone, store, clock)
    assert await gate.check_permission() is True
    assert microphone.opened == [None]
    assert microphone.streams[0].stopped is True


@pytest.mark.anyio("asyncio")
async def test_request_permission_retries_without_constraints(store, clock) -> None:
    constraints = CaptureConstraints(sample_rate=16_000)
    microphone = FakeMicrophone(failures=[ConstraintsNotSupported("sample rate")])
    gate = PermissionGate(microphone, store, clock, constraints)
    assert await gate.request_permission() is True
    assert microphone.opened == [constraints, None]
    assert microphone.streams[0].stopped is True


@pytest.mark.anyio("asyncio")
async def test_request_permission_failure_reports_not_granted(store, clock) -> None:
    gate = PermissionGate(FakeMicrophone(failures=[RuntimeError("blocked by user")]), store, clock)
    assert await gate.request_permission() is False
    assert gate.saved_permission().granted is False
