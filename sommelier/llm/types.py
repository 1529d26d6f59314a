from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Union

from sommelier.errors import ProtocolError

StreamingEventType = Literal["first_token", "token", "complete", "error"]
ConversationId = Union[int, str]

_EVENT_TYPES = ("first_token", "token", "complete", "error")


@dataclass(slots=True)
class ChatMessage:
    role: Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class StreamingEvent:
    type: StreamingEventType
    content: str | None = None
    start_tts: bool = False
    conversation_id: ConversationId | None = None
    message: str | None = None

    @property
    def terminal(self) -> bool:
        return self.type in ("complete", "error")

    @classmethod
    def from_envelope(cls, data: Any) -> "StreamingEvent":
        if not isinstance(data, dict) or data.get("type") not in _EVENT_TYPES:
            raise ProtocolError(f"Unexpected streaming envelope: {data!r}")
        content = data.get("content")
        if content is not None and not isinstance(content, str):
            raise ProtocolError("Streaming envelope content must be text")
        return cls(
            type=data["type"],
            content=content,
            start_tts=bool(data.get("start_tts", False)),
            conversation_id=data.get("conversationId"),
            message=data.get("message"),
        )

    def to_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {"type": self.type}
        if self.type == "first_token":
            envelope["content"] = self.content or ""
            envelope["start_tts"] = self.start_tts
        elif self.type == "token":
            envelope["content"] = self.content or ""
        elif self.type == "complete":
            envelope["conversationId"] = self.conversation_id
        else:
            envelope["message"] = self.message or ""
        return envelope


__all__ = ["ChatMessage", "ConversationId", "StreamingEvent", "StreamingEventType"]
