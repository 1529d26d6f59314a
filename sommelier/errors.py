from __future__ import annotations

from typing import Any


class VoicePipelineError(Exception):
    """Base class for failures surfaced by the voice pipeline."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class PermissionDenied(VoicePipelineError):
    user_message = "Microphone permission denied"


class DeviceError(VoicePipelineError):
    user_message = "The audio device is unavailable"


class RateLimited(VoicePipelineError):
    user_message = "The service is busy right now. Please try again in a moment."

    def __init__(self, message: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ServiceError(VoicePipelineError):
    user_message = "The service failed to respond."

    def __init__(self, message: str | None = None, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class StreamInterrupted(VoicePipelineError):
    user_message = "Connection to streaming service lost"

    def __init__(self, message: str | None = None, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class ProtocolError(VoicePipelineError):
    user_message = "Failed to parse streaming response"


class CapabilityUnavailable(VoicePipelineError):
    """Raised at construction time when a platform adapter cannot be created."""

    user_message = "Required platform capability is not available"


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


__all__ = [
    "VoicePipelineError",
    "PermissionDenied",
    "DeviceError",
    "RateLimited",
    "ServiceError",
    "StreamInterrupted",
    "ProtocolError",
    "CapabilityUnavailable",
    "parse_retry_after",
]
