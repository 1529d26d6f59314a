from __future__ import annotations

import json
from dataclasses import dataclass

from sommelier.audio.capture import CaptureConstraints, ConstraintsNotSupported, MicrophoneDevice
from sommelier.orchestrator.clock import CLOCK, Clock
from sommelier.storage import PERMISSION_KEY, SKIP_PROMPT_KEY, ClientStore
from sommelier.telemetry.logging import get_logger

PERMISSION_TTL_DAYS = 30
PERMISSION_TTL_MS = PERMISSION_TTL_DAYS * 24 * 60 * 60 * 1000


@dataclass(slots=True)
class PermissionState:
    granted: bool
    timestamp: int


class PermissionGate:
    """Obtains microphone permission and caches the outcome for thirty days.

    Platform failures never propagate: anything that goes wrong while asking
    is logged and reported as "not granted".
    """

    def __init__(
        self,
        device: MicrophoneDevice,
        store: ClientStore,
        clock: Clock = CLOCK,
        constraints: CaptureConstraints | None = None,
    ) -> None:
        self._device = device
        self._store = store
        self._clock = clock
        self._constraints = constraints or CaptureConstraints()
        self._logger = get_logger(__name__)

    def saved_permission(self) -> PermissionState | None:
        raw = self._store.get(PERMISSION_KEY)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            state = PermissionState(granted=bool(data["granted"]), timestamp=int(data["timestamp"]))
        except (ValueError, TypeError, KeyError) as exc:
            self._logger.warning("permission.cache.unparsable", error=str(exc))
            self.clear()
            return None
        if self._clock.now_ms() - state.timestamp > PERMISSION_TTL_MS:
            self._logger.info("permission.cache.expired", timestamp=state.timestamp)
            self.clear()
            return None
        return state

    def save(self, granted: bool) -> PermissionState:
        state = PermissionState(granted=granted, timestamp=self._clock.now_ms())
        self._store.set_json(PERMISSION_KEY, {"granted": state.granted, "timestamp": state.timestamp})
        self._logger.info("permission.cache.saved", granted=granted)
        return state

    def clear(self) -> None:
        self._store.remove(PERMISSION_KEY)

    def should_skip_prompt(self) -> bool:
        saved = self.saved_permission()
        return saved is not None and saved.granted

    def set_skip_prompt(self, skip: bool) -> None:
        self._store.set(SKIP_PROMPT_KEY, "true" if skip else "false")

    def skip_prompt_requested(self) -> bool:
        return self._store.get(SKIP_PROMPT_KEY) == "true"

    async def check_permission(self) -> bool:
        try:
            status = await self._device.query_permission()
        except Exception as exc:
            self._logger.warning("permission.query.failed", error=str(exc))
            status = None
        if status == "granted":
            self.save(True)
            return True
        if status == "denied":
            self.save(False)
            return False
        return await self._trial_open(None)

    async def request_permission(self) -> bool:
        try:
            return await self._trial_open(self._constraints)
        except ConstraintsNotSupported as exc:
            self._logger.warning("permission.request.overconstrained", error=str(exc))
        return await self._trial_open(None)

    async def _trial_open(self, constraints: CaptureConstraints | None) -> bool:
        try:
            stream = await self._device.open(constraints)
        except ConstraintsNotSupported:
            if constraints is None:
                self.save(False)
                return False
            raise
        except Exception as exc:
            self._logger.warning("permission.trial.denied", error=str(exc))
            self.save(False)
            return False
        try:
            stream.stop()
        except Exception as exc:
            self._logger.warning("permission.trial.release_failed", error=str(exc))
        self.save(True)
        return True


__all__ = ["PermissionGate", "PermissionState", "PERMISSION_TTL_DAYS", "PERMISSION_TTL_MS"]
