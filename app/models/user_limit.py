from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class UserLimit(Base):
    """Operator-granted per-user overrides of the daily limits."""

    __tablename__ = "user_limits"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    custom_voice_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    custom_text_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
