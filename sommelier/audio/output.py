from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from typing import Optional, Protocol

from sommelier.orchestrator.events import AudioBlob

BLOB_SCHEME = "blob:"


class AudioElement(Protocol):
    """A single playable source with live volume, mirroring an HTML audio element."""

    src: str
    volume: float
    paused: bool
    on_ended: Optional[Callable[[], None]]
    on_error: Optional[Callable[[Exception], None]]

    @property
    def current_time(self) -> float: ...

    async def play(self) -> None: ...

    def pause(self) -> None: ...

    def reset(self) -> None: ...


class AudioElementFactory(Protocol):
    def create(self, src: str) -> AudioElement: ...

    def stop_all(self) -> None:
        """Silence every element the adapter owns, tracked or not."""
        ...


class BlobURLRegistry:
    """Hands out ``blob:`` URLs for in-memory audio; each URL can be revoked once."""

    def __init__(self) -> None:
        self._blobs: dict[str, AudioBlob] = {}
        self._lock = threading.Lock()

    def create(self, blob: AudioBlob) -> str:
        url = f"{BLOB_SCHEME}sommelier/{uuid.uuid4()}"
        with self._lock:
            self._blobs[url] = blob
        return url

    def resolve(self, url: str) -> AudioBlob | None:
        with self._lock:
            return self._blobs.get(url)

    def revoke(self, url: str) -> bool:
        with self._lock:
            return self._blobs.pop(url, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


__all__ = [
    "AudioElement",
    "AudioElementFactory",
    "BlobURLRegistry",
    "BLOB_SCHEME",
]
