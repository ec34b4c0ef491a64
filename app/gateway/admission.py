"""Admission Gate: decides whether a request may proceed.

Order of checks:
  1. Bans (address → device → user), unconditional
  2. Caller-supplied upstream credential → allowed, quota untouched
  3. Exempt prompt categories → allowed, quota untouched
  4. Identity: device id, or the authenticated user as fallback key
  5. Daily quota: lazy create, lazy reset, atomic conditional increment

Store failures follow the gate's FailurePolicy: fail-open admits the
request, fail-closed denies it with STORE_UNAVAILABLE.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum

from app.core.exceptions import AppError
from app.core.metrics import ADMISSION_DECISIONS
from app.gateway.telemetry import BannedAttemptEvent, NullRecorder, TelemetryRecorder

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class QuotaCategory(str, Enum):
    VOICE = "voice"
    TEXT = "text"


class BanType(str, Enum):
    IP = "ip"
    DEVICE = "device"
    USER = "user"


class ResetPolicy(str, Enum):
    UTC_MIDNIGHT = "utc_midnight"
    ROLLING_24H = "rolling_24h"


class FailurePolicy(str, Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class DecisionReason(str, Enum):
    ALLOWED = "allowed"
    OWN_CREDENTIAL = "own_credential"
    EXEMPT = "exempt"
    PREMIUM_BYPASS = "premium_bypass"
    STORE_FAIL_OPEN = "store_fail_open"
    BANNED = "banned"
    LIMIT = "limit"
    IDENTITY_REQUIRED = "identity_required"
    STORE_UNAVAILABLE = "store_unavailable"


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallerIdentity:
    """Admission key material. user_id is only ever a verified token subject."""

    device_id: str | None = None
    user_id: str | None = None
    ip_address: str | None = None

    @property
    def quota_key(self) -> str | None:
        if self.device_id:
            return self.device_id
        if self.user_id:
            return f"user:{self.user_id}"
        return None


@dataclass
class QuotaRecord:
    key: str
    voice_count: int
    text_count: int
    owns_pooled_credential: bool
    reset_at: datetime

    def count(self, category: QuotaCategory) -> int:
        return self.voice_count if category == QuotaCategory.VOICE else self.text_count


@dataclass
class Decision:
    allowed: bool
    reason: DecisionReason
    category: QuotaCategory
    used: int | None = None
    limit: int | None = None
    reset_at: datetime | None = None
    ban_type: BanType | None = None
    ban_reason: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"allowed": self.allowed, "reason": self.reason.value, "category": self.category.value}
        if self.used is not None:
            data["used"] = self.used
        if self.limit is not None:
            data["limit"] = self.limit
        if self.reset_at is not None:
            data["resetAt"] = self.reset_at.isoformat()
        if self.ban_type is not None:
            data["banType"] = self.ban_type.value
        return data


class AdmissionStoreError(Exception):
    """The quota/ban store could not be read or written."""


class AdmissionDenied(AppError):
    _STATUS = {
        DecisionReason.BANNED: (403, "BANNED"),
        DecisionReason.LIMIT: (429, "RATE_LIMIT_EXCEEDED"),
        DecisionReason.IDENTITY_REQUIRED: (400, "DEVICE_ID_REQUIRED"),
        DecisionReason.STORE_UNAVAILABLE: (503, "ADMISSION_UNAVAILABLE"),
    }

    def __init__(self, decision: Decision):
        self.status_code, code = self._STATUS.get(decision.reason, (403, "ADMISSION_DENIED"))
        super().__init__(self._message(decision), error_code=code, extra=decision.to_dict())
        self.decision = decision

    @staticmethod
    def _message(decision: Decision) -> str:
        if decision.reason == DecisionReason.BANNED:
            return "Access denied"
        if decision.reason == DecisionReason.LIMIT:
            message = (
                f"Daily {decision.category.value} limit of {decision.limit} reached "
                f"({decision.used}/{decision.limit})."
            )
            if decision.reset_at is not None:
                message += f" Resets at {decision.reset_at.astimezone(timezone.utc):%Y-%m-%d %H:%M} UTC."
            return message
        if decision.reason == DecisionReason.IDENTITY_REQUIRED:
            return "A device identifier is required"
        return "Usage limits are temporarily unavailable, please retry"


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class AdmissionStore(ABC):
    """Keyed quota/ban persistence. Implementations raise AdmissionStoreError."""

    @abstractmethod
    async def find_ban(self, identity: CallerIdentity) -> tuple[BanType, str] | None:
        """First matching ban, checked address → device → user."""

    @abstractmethod
    async def custom_limit(self, user_id: str, category: QuotaCategory) -> int | None: ...

    @abstractmethod
    async def global_limit(self, category: QuotaCategory) -> int | None: ...

    @abstractmethod
    async def get_or_create(self, key: str, reset_at: datetime) -> QuotaRecord:
        """Return the record, inserting a zeroed one if absent (race-tolerant)."""

    @abstractmethod
    async def reset_if_due(self, key: str, now: datetime, next_reset: datetime) -> QuotaRecord:
        """Zero counters and move reset_at, only where reset_at <= now."""

    @abstractmethod
    async def increment(self, key: str, category: QuotaCategory, limit: int | None) -> tuple[bool, int]:
        """Atomically add one where count < limit (None = unconditional).

        Returns (applied, count after the attempt).
        """


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdmissionGate:
    def __init__(
        self,
        store: AdmissionStore,
        default_limits: dict[QuotaCategory, int],
        reset_policy: ResetPolicy = ResetPolicy.UTC_MIDNIGHT,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED,
        exempt_categories: frozenset[str] = frozenset(),
        recorder: TelemetryRecorder | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.default_limits = default_limits
        self.reset_policy = reset_policy
        self.failure_policy = failure_policy
        self.exempt_categories = exempt_categories
        self.recorder = recorder or NullRecorder()
        self._clock = clock

    def next_reset(self, now: datetime) -> datetime:
        if self.reset_policy == ResetPolicy.ROLLING_24H:
            return now + timedelta(hours=24)
        tomorrow = now.astimezone(timezone.utc).date() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)

    async def admit(
        self,
        identity: CallerIdentity,
        is_voice: bool,
        prompt_category: str | None = None,
        caller_credential: bool = False,
    ) -> Decision:
        category = QuotaCategory.VOICE if is_voice else QuotaCategory.TEXT
        try:
            decision = await self._decide(identity, category, prompt_category, caller_credential)
        except AdmissionStoreError as e:
            if self.failure_policy == FailurePolicy.FAIL_OPEN:
                logger.warning("Admission store error, failing open (%s): %s", category.value, e)
                decision = Decision(True, DecisionReason.STORE_FAIL_OPEN, category)
            else:
                logger.error("Admission store error, failing closed (%s): %s", category.value, e)
                decision = Decision(False, DecisionReason.STORE_UNAVAILABLE, category)
        ADMISSION_DECISIONS.labels(category=category.value, outcome=decision.reason.value).inc()
        return decision

    async def _decide(
        self,
        identity: CallerIdentity,
        category: QuotaCategory,
        prompt_category: str | None,
        caller_credential: bool,
    ) -> Decision:
        ban = await self.store.find_ban(identity)
        if ban is not None:
            ban_type, reason = ban
            logger.warning(
                "Banned %s attempted access (user=%s device=%s ip=%s)",
                ban_type.value,
                identity.user_id,
                identity.device_id,
                identity.ip_address,
            )
            self.recorder.record(BannedAttemptEvent(identity=identity, ban_type=ban_type.value, category=category.value))
            return Decision(False, DecisionReason.BANNED, category, ban_type=ban_type, ban_reason=reason)

        if caller_credential:
            return Decision(True, DecisionReason.OWN_CREDENTIAL, category)
        if prompt_category and prompt_category in self.exempt_categories:
            return Decision(True, DecisionReason.EXEMPT, category)

        key = identity.quota_key
        if key is None:
            return Decision(False, DecisionReason.IDENTITY_REQUIRED, category)

        now = self._clock()
        record = await self.store.get_or_create(key, self.next_reset(now))
        if now >= record.reset_at:
            record = await self.store.reset_if_due(key, now, self.next_reset(now))

        limit = await self._limit_for(category, identity.user_id)

        # Premium voice callers are counted but never denied. The flag is
        # maintained outside this service and only read here.
        if category == QuotaCategory.VOICE and record.owns_pooled_credential:
            _, used = await self.store.increment(key, category, None)
            return Decision(True, DecisionReason.PREMIUM_BYPASS, category, used, limit, record.reset_at)

        applied, used = await self.store.increment(key, category, limit)
        if not applied:
            logger.info("Quota reached for %s: %s %d/%d", key, category.value, used, limit)
            return Decision(False, DecisionReason.LIMIT, category, used, limit, record.reset_at)
        return Decision(True, DecisionReason.ALLOWED, category, used, limit, record.reset_at)

    async def _limit_for(self, category: QuotaCategory, user_id: str | None) -> int:
        if user_id:
            custom = await self.store.custom_limit(user_id, category)
            if custom is not None:
                return custom
        configured = await self.store.global_limit(category)
        if configured is not None:
            return configured
        return self.default_limits[category]
