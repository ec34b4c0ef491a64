"""Streaming chat request schemas (camelCase on the wire)."""

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class ChatMessageIn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ToolIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ChatContextIn(BaseModel):
    user_id: str | None = Field(None, alias="userId")
    session_id: str | None = Field(None, alias="sessionId")
    coach_id: str | None = Field(None, alias="coachId")
    feature_name: str | None = Field(None, alias="featureName")
    device_id: str | None = Field(None, alias="deviceId")
    is_voice_mode: bool = Field(False, alias="isVoiceMode")

    model_config = {"populate_by_name": True}


class StreamChatRequest(BaseModel):
    message: str = ""
    previous_messages: list[ChatMessageIn] = Field(default_factory=list, alias="previousMessages")
    prompt_type: str | None = Field(None, alias="promptType", max_length=100)
    provider: Literal["openai", "anthropic"] = "openai"
    model: str | None = Field(None, max_length=100)
    tools: list[ToolIn] = Field(default_factory=list)
    context: ChatContextIn = Field(default_factory=ChatContextIn)

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _require_content(self):
        # An empty message is only meaningful as a regenerate over prior turns
        if not self.message.strip() and not self.previous_messages:
            raise ValueError("message is required")
        return self
