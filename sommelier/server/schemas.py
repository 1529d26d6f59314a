from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from sommelier.config import TTSVoice


class TextToSpeechRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4000)
    voice: TTSVoice = "nova"


class ChatMessageModel(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(min_length=1)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessageModel] = Field(min_length=1)
    conversation_id: Union[int, str, None] = Field(default=None, alias="conversationId")
    wine_context: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("wineContext", "wineData", "wine_context"),
    )
    optimize_for_speed: bool = False
    text_only: bool = False
    disable_audio: bool = False

    @property
    def speak(self) -> bool:
        return not (self.text_only or self.disable_audio)


__all__ = ["ChatMessageModel", "ChatRequest", "TextToSpeechRequest"]
