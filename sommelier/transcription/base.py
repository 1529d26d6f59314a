from __future__ import annotations

from abc import ABC, abstractmethod

from sommelier.orchestrator.events import AudioBlob


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(self, blob: AudioBlob) -> str:
        """Return the text spoken in a finished recording."""

    @abstractmethod
    async def aclose(self) -> None:
        """Cleanup resources."""
