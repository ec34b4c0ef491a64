from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class CredentialUsage(Base):
    """Latest health snapshot of a pooled speech credential.

    The secret itself is never stored: rows are keyed by its SHA-256 digest
    and carry only the shortened display form.
    """

    __tablename__ = "credential_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    short_key: Mapped[str] = mapped_column(String(40), nullable=False)
    character_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    character_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_characters: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_over_limit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_near_limit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    next_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
