import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType


class AiInteraction(Base):
    """One telemetry row per gateway event (request, response, error, tts)."""

    __tablename__ = "ai_interactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    coach_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feature_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    provider: Mapped[str] = mapped_column(String(30), nullable=False)  # openai | anthropic | elevenlabs
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    prompt_type: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    interaction_type: Mapped[str] = mapped_column(String(20), nullable=False)  # request | response | error | tts
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # pending | success | error

    message_length: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_length: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stream_aborted: Mapped[bool] = mapped_column(Boolean, default=False)

    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)  # first 500 chars
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )
