from sommelier.transcription.base import Transcriber
from sommelier.transcription.client import TranscriptionClient

__all__ = ["Transcriber", "TranscriptionClient"]
