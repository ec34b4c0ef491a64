"""Speech synthesis schemas."""

from typing import Any

from pydantic import BaseModel, Field


class SpeechRequestIn(BaseModel):
    voice_id: str = Field(..., alias="voiceId", min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_-]+$")
    text: str = Field(..., min_length=1, max_length=5000)
    settings: dict[str, Any] | None = None
    device_id: str | None = Field(None, alias="deviceId")

    model_config = {"populate_by_name": True}


class CredentialStatusOut(BaseModel):
    key: str  # shortened: first 12 + last 8 chars
    status: str
    characterCount: int
    characterLimit: int
    remainingCharacters: int
    usagePercent: float | None
    nextResetAt: str | None


class PoolSummaryOut(BaseModel):
    totalKeys: int
    checkedKeys: int
    activeKeys: int
    nearLimitKeys: int
    exhaustedKeys: int
    rateLimitedKeys: int
    invalidKeys: int
    totalRemainingCharacters: int
    currentIndex: int
    keys: list[CredentialStatusOut]
