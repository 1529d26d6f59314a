from __future__ import annotations

import base64

from sommelier.orchestrator.events import AudioBlob

KEY_LENGTH = 50


def cache_key(text: str) -> str:
    """Fixed-length fingerprint of the spoken text; long near-duplicates may collide."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")[:KEY_LENGTH]


class AudioCache:
    """Bounded synthesized-audio cache; the oldest insertion is evicted first."""

    def __init__(self, max_size: int = 10) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: dict[str, AudioBlob] = {}

    def get(self, text: str) -> AudioBlob | None:
        return self._entries.get(cache_key(text))

    def set(self, text: str, blob: AudioBlob) -> None:
        self._entries[cache_key(text)] = blob
        while len(self._entries) > self.max_size:
            del self._entries[next(iter(self._entries))]

    def has(self, text: str) -> bool:
        return cache_key(text) in self._entries

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["AudioCache", "cache_key", "KEY_LENGTH"]
