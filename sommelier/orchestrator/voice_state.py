from __future__ import annotations

import dataclasses

from sommelier.orchestrator.bus import EventBus
from sommelier.orchestrator.events import VOICE_STATE_CHANGED, VoiceState


class VoiceStateStore:
    """Holds the UI-facing voice flags.

    Only the orchestrator that owns the store calls ``update``/``reset``;
    everybody else reads immutable snapshots or listens for
    ``voiceStateChanged``.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._state = VoiceState()

    def snapshot(self) -> VoiceState:
        return self._state

    async def update(self, **changes: bool) -> VoiceState:
        new_state = dataclasses.replace(self._state, **changes)
        if new_state != self._state:
            self._state = new_state
            await self._bus.publish(VOICE_STATE_CHANGED, new_state.to_dict())
        return self._state

    async def reset(self) -> VoiceState:
        return await self.update(**VoiceState().to_dict())


__all__ = ["VoiceStateStore"]
