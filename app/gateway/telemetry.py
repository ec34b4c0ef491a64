"""Fire-and-forget telemetry.

``TelemetryRecorder.record(event)`` never blocks and never raises. The SQL
recorder writes each event in its own background task and session; a failed
write is logged, counted and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.metrics import TELEMETRY_FAILURES
from app.models.ai_interaction import AiInteraction
from app.models.ban import BannedAccessAttempt
from app.models.credential_usage import CredentialUsage
from app.models.device_tracking import DeviceTracking

if TYPE_CHECKING:
    from app.gateway.admission import CallerIdentity

logger = logging.getLogger(__name__)

STACK_TRACE_LIMIT = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class InteractionEvent:
    request_id: str
    interaction_type: str  # request | response | error | tts
    status: str  # pending | success | error
    provider: str
    model: str | None = None
    prompt_type: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    coach_id: str | None = None
    feature_name: str | None = None
    message_length: int | None = None
    response_length: int | None = None
    tokens_used: int | None = None
    response_time_ms: int | None = None
    stream_aborted: bool = False
    error_code: str | None = None
    error_message: str | None = None
    stack_trace: str | None = None
    details: dict[str, Any] | None = None

    kind = "interaction"


@dataclass
class CredentialSnapshotEvent:
    key_hash: str
    short_key: str
    status: str
    character_count: int
    character_limit: int
    remaining_characters: int
    is_over_limit: bool
    is_near_limit: bool
    next_reset_at: datetime | None = None
    checked_at: datetime = field(default_factory=_now)

    kind = "credential_snapshot"


@dataclass
class BannedAttemptEvent:
    identity: CallerIdentity
    ban_type: str
    category: str
    attempted_at: datetime = field(default_factory=_now)

    kind = "banned_attempt"


@dataclass
class DeviceSightingEvent:
    user_id: str
    device_id: str
    ip_address: str | None = None
    seen_at: datetime = field(default_factory=_now)

    kind = "device_sighting"


TelemetryEvent = InteractionEvent | CredentialSnapshotEvent | BannedAttemptEvent | DeviceSightingEvent


# ---------------------------------------------------------------------------
# Recorders
# ---------------------------------------------------------------------------


class TelemetryRecorder(ABC):
    @abstractmethod
    def record(self, event: TelemetryEvent) -> None: ...

    async def drain(self) -> None:
        """Wait for in-flight writes (shutdown, tests)."""


class NullRecorder(TelemetryRecorder):
    def record(self, event: TelemetryEvent) -> None:
        pass


class SqlTelemetryRecorder(TelemetryRecorder):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    def record(self, event: TelemetryEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._write(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _write(self, event: TelemetryEvent) -> None:
        try:
            async with self._session_factory() as session:
                await self._persist(session, event)
                await session.commit()
        except Exception as e:
            TELEMETRY_FAILURES.labels(kind=event.kind).inc()
            logger.warning("Telemetry write failed (%s): %s", event.kind, e)

    async def _persist(self, session: AsyncSession, event: TelemetryEvent) -> None:
        if isinstance(event, InteractionEvent):
            session.add(
                AiInteraction(
                    request_id=event.request_id,
                    interaction_type=event.interaction_type,
                    status=event.status,
                    provider=event.provider,
                    model=event.model,
                    prompt_type=event.prompt_type,
                    user_id=event.user_id,
                    session_id=event.session_id,
                    coach_id=event.coach_id,
                    feature_name=event.feature_name,
                    message_length=event.message_length,
                    response_length=event.response_length,
                    tokens_used=event.tokens_used,
                    response_time_ms=event.response_time_ms,
                    stream_aborted=event.stream_aborted,
                    error_code=event.error_code,
                    error_message=event.error_message,
                    stack_trace=event.stack_trace[:STACK_TRACE_LIMIT] if event.stack_trace else None,
                    details=event.details,
                )
            )
        elif isinstance(event, CredentialSnapshotEvent):
            row = (
                await session.execute(select(CredentialUsage).where(CredentialUsage.key_hash == event.key_hash))
            ).scalar_one_or_none()
            if row is None:
                row = CredentialUsage(key_hash=event.key_hash)
                session.add(row)
            row.short_key = event.short_key
            row.status = event.status
            row.character_count = event.character_count
            row.character_limit = event.character_limit
            row.remaining_characters = event.remaining_characters
            row.is_over_limit = event.is_over_limit
            row.is_near_limit = event.is_near_limit
            row.next_reset_at = event.next_reset_at
            row.last_checked = event.checked_at
        elif isinstance(event, BannedAttemptEvent):
            session.add(
                BannedAccessAttempt(
                    user_id=event.identity.user_id,
                    device_id=event.identity.device_id,
                    ip_address=event.identity.ip_address,
                    ban_type=event.ban_type,
                    request_details={"category": event.category},
                    attempted_at=event.attempted_at,
                )
            )
        elif isinstance(event, DeviceSightingEvent):
            row = (
                await session.execute(
                    select(DeviceTracking).where(
                        DeviceTracking.user_id == event.user_id,
                        DeviceTracking.device_id == event.device_id,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                session.add(
                    DeviceTracking(
                        user_id=event.user_id,
                        device_id=event.device_id,
                        ip_address=event.ip_address,
                        first_seen=event.seen_at,
                        last_seen=event.seen_at,
                    )
                )
            else:
                row.ip_address = event.ip_address or row.ip_address
                row.last_seen = event.seen_at
