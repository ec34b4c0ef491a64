from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class UsageLimit(Base):
    """Daily quota counters for one caller identity."""

    __tablename__ = "usage_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # device id, or "user:<id>" for authenticated callers without a device
    limit_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    voice_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    text_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    owns_pooled_credential: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
