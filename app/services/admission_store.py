"""SQL-backed quota and ban store for the admission gate.

Each operation runs in its own short session. Counter changes are single
conditional UPDATE statements so concurrent requests for one identity can
never lose an increment or overshoot the limit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.gateway.admission import (
    AdmissionStore,
    AdmissionStoreError,
    BanType,
    CallerIdentity,
    QuotaCategory,
    QuotaRecord,
)
from app.models.ban import BannedDevice, BannedIp, BannedUser
from app.models.global_setting import GlobalSetting
from app.models.usage_limit import UsageLimit
from app.models.user_limit import UserLimit

logger = logging.getLogger(__name__)

GLOBAL_LIMIT_KEYS = {
    QuotaCategory.VOICE: "default_voice_limit",
    QuotaCategory.TEXT: "default_text_limit",
}


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_record(row: UsageLimit) -> QuotaRecord:
    return QuotaRecord(
        key=row.limit_key,
        voice_count=row.voice_count,
        text_count=row.text_count,
        owns_pooled_credential=row.owns_pooled_credential,
        reset_at=_aware(row.reset_at),
    )


def _counter(category: QuotaCategory):
    return UsageLimit.voice_count if category == QuotaCategory.VOICE else UsageLimit.text_count


class SqlAdmissionStore(AdmissionStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_ban(self, identity: CallerIdentity) -> tuple[BanType, str] | None:
        checks = (
            (BanType.IP, identity.ip_address, BannedIp.reason, BannedIp.ip_address),
            (BanType.DEVICE, identity.device_id, BannedDevice.reason, BannedDevice.device_id),
            (BanType.USER, identity.user_id, BannedUser.reason, BannedUser.user_id),
        )
        try:
            async with self._session_factory() as session:
                for ban_type, value, reason_col, key_col in checks:
                    if not value:
                        continue
                    reason = (await session.execute(select(reason_col).where(key_col == value))).scalar_one_or_none()
                    if reason is not None:
                        return ban_type, reason
        except SQLAlchemyError as e:
            raise AdmissionStoreError(f"ban lookup failed: {e}") from e
        return None

    async def custom_limit(self, user_id: str, category: QuotaCategory) -> int | None:
        column = UserLimit.custom_voice_limit if category == QuotaCategory.VOICE else UserLimit.custom_text_limit
        try:
            async with self._session_factory() as session:
                return (await session.execute(select(column).where(UserLimit.user_id == user_id))).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise AdmissionStoreError(f"custom limit lookup failed: {e}") from e

    async def global_limit(self, category: QuotaCategory) -> int | None:
        try:
            async with self._session_factory() as session:
                raw = (
                    await session.execute(
                        select(GlobalSetting.value).where(GlobalSetting.key == GLOBAL_LIMIT_KEYS[category])
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise AdmissionStoreError(f"global limit lookup failed: {e}") from e
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer global setting %s=%r", GLOBAL_LIMIT_KEYS[category], raw)
            return None

    async def _load(self, session: AsyncSession, key: str) -> UsageLimit | None:
        result = await session.execute(
            select(UsageLimit).where(UsageLimit.limit_key == key).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, key: str, reset_at: datetime) -> QuotaRecord:
        try:
            async with self._session_factory() as session:
                row = await self._load(session, key)
                if row is not None:
                    return _to_record(row)
                session.add(UsageLimit(limit_key=key, voice_count=0, text_count=0, reset_at=reset_at))
                try:
                    await session.commit()
                except IntegrityError:
                    # Created concurrently by another request
                    await session.rollback()
                row = await self._load(session, key)
                if row is None:
                    raise AdmissionStoreError(f"quota record for {key} vanished after insert")
                return _to_record(row)
        except SQLAlchemyError as e:
            raise AdmissionStoreError(f"quota lookup failed: {e}") from e

    async def reset_if_due(self, key: str, now: datetime, next_reset: datetime) -> QuotaRecord:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(UsageLimit)
                    .where(UsageLimit.limit_key == key, UsageLimit.reset_at <= now)
                    .values(voice_count=0, text_count=0, reset_at=next_reset, updated_at=now)
                )
                await session.commit()
                row = await self._load(session, key)
        except SQLAlchemyError as e:
            raise AdmissionStoreError(f"quota reset failed: {e}") from e
        if row is None:
            raise AdmissionStoreError(f"quota record for {key} missing")
        return _to_record(row)

    async def increment(self, key: str, category: QuotaCategory, limit: int | None) -> tuple[bool, int]:
        counter = _counter(category)
        conditions = [UsageLimit.limit_key == key]
        if limit is not None:
            conditions.append(counter < limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(UsageLimit)
                    .where(*conditions)
                    .values({counter.key: counter + 1, "updated_at": datetime.now(timezone.utc)})
                )
                await session.commit()
                count = (await session.execute(select(counter).where(UsageLimit.limit_key == key))).scalar_one()
        except SQLAlchemyError as e:
            raise AdmissionStoreError(f"quota increment failed: {e}") from e
        return result.rowcount == 1, count
