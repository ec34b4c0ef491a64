"""Tests for the admission gate.

Covers:
  - Decision ordering: bans, own credential, exempt categories, identity
  - Daily quota: first request, limit reached, reset after boundary
  - Premium (pooled credential) voice bypass counting without denial
  - Limit precedence: custom > global > configured default
  - Store failure policies (fail-open / fail-closed)
  - SqlAdmissionStore against SQLite, including concurrent increments
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from app.gateway.admission import (
    AdmissionDenied,
    AdmissionGate,
    AdmissionStore,
    AdmissionStoreError,
    BanType,
    CallerIdentity,
    Decision,
    DecisionReason,
    FailurePolicy,
    QuotaCategory,
    QuotaRecord,
    ResetPolicy,
)
from app.models.ban import BannedDevice, BannedIp, BannedUser
from app.models.global_setting import GlobalSetting
from app.models.usage_limit import UsageLimit
from app.models.user_limit import UserLimit
from app.services.admission_store import SqlAdmissionStore

LIMITS = {QuotaCategory.VOICE: 3, QuotaCategory.TEXT: 5}
DEVICE = CallerIdentity(device_id="dev-1", user_id="u-1", ip_address="10.0.0.1")


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class MemoryStore(AdmissionStore):
    """In-memory store with the same conditional-update semantics as the SQL store."""

    def __init__(self):
        self.records: dict[str, QuotaRecord] = {}
        self.bans: dict[BanType, dict[str, str]] = {t: {} for t in BanType}
        self.custom: dict[str, dict[QuotaCategory, int]] = {}
        self.globals: dict[QuotaCategory, int] = {}

    async def find_ban(self, identity):
        for ban_type, value in (
            (BanType.IP, identity.ip_address),
            (BanType.DEVICE, identity.device_id),
            (BanType.USER, identity.user_id),
        ):
            if value and value in self.bans[ban_type]:
                return ban_type, self.bans[ban_type][value]
        return None

    async def custom_limit(self, user_id, category):
        return self.custom.get(user_id, {}).get(category)

    async def global_limit(self, category):
        return self.globals.get(category)

    async def get_or_create(self, key, reset_at):
        if key not in self.records:
            self.records[key] = QuotaRecord(key, 0, 0, False, reset_at)
        r = self.records[key]
        return QuotaRecord(r.key, r.voice_count, r.text_count, r.owns_pooled_credential, r.reset_at)

    async def reset_if_due(self, key, now, next_reset):
        r = self.records[key]
        if r.reset_at <= now:
            r.voice_count = r.text_count = 0
            r.reset_at = next_reset
        return QuotaRecord(r.key, r.voice_count, r.text_count, r.owns_pooled_credential, r.reset_at)

    async def increment(self, key, category, limit):
        r = self.records[key]
        attr = "voice_count" if category == QuotaCategory.VOICE else "text_count"
        if limit is not None and getattr(r, attr) >= limit:
            return False, getattr(r, attr)
        setattr(r, attr, getattr(r, attr) + 1)
        return True, getattr(r, attr)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gate(store, clock, recorder):
    return AdmissionGate(store, LIMITS, exempt_categories=frozenset({"daily_refresh"}), recorder=recorder, clock=clock)


# ==========================================================================
# Gate decisions
# ==========================================================================


class TestBans:
    async def test_banned_device_denied_with_no_usage(self, gate, store, recorder):
        store.bans[BanType.DEVICE]["dev-1"] = "abuse"
        decision = await gate.admit(DEVICE, is_voice=False)
        assert decision.allowed is False
        assert decision.reason == DecisionReason.BANNED
        assert decision.ban_type == BanType.DEVICE
        assert decision.ban_reason == "abuse"
        assert store.records == {}
        assert len(recorder.of_kind("banned_attempt")) == 1

    async def test_ban_precedes_own_credential(self, gate, store):
        store.bans[BanType.USER]["u-1"] = "tos"
        decision = await gate.admit(DEVICE, is_voice=False, caller_credential=True)
        assert decision.reason == DecisionReason.BANNED

    async def test_ban_precedes_exempt_category(self, gate, store):
        store.bans[BanType.IP]["10.0.0.1"] = "scraping"
        decision = await gate.admit(DEVICE, is_voice=True, prompt_category="daily_refresh")
        assert decision.reason == DecisionReason.BANNED
        assert decision.ban_type == BanType.IP

    async def test_address_ban_checked_first(self, gate, store):
        store.bans[BanType.IP]["10.0.0.1"] = "ip"
        store.bans[BanType.DEVICE]["dev-1"] = "device"
        store.bans[BanType.USER]["u-1"] = "user"
        decision = await gate.admit(DEVICE, is_voice=False)
        assert decision.ban_type == BanType.IP

    async def test_denied_exception_is_403(self, gate, store):
        store.bans[BanType.DEVICE]["dev-1"] = "abuse"
        exc = AdmissionDenied(await gate.admit(DEVICE, is_voice=False))
        assert exc.status_code == 403
        assert exc.to_dict()["errorCode"] == "BANNED"
        assert exc.to_dict()["banType"] == "device"


class TestShortcuts:
    async def test_own_credential_skips_quota(self, gate, store):
        decision = await gate.admit(DEVICE, is_voice=False, caller_credential=True)
        assert decision.allowed is True
        assert decision.reason == DecisionReason.OWN_CREDENTIAL
        assert store.records == {}

    async def test_exempt_category_skips_quota(self, gate, store):
        decision = await gate.admit(DEVICE, is_voice=False, prompt_category="daily_refresh")
        assert decision.reason == DecisionReason.EXEMPT
        assert store.records == {}

    async def test_missing_identity_denied(self, gate):
        decision = await gate.admit(CallerIdentity(ip_address="10.0.0.9"), is_voice=False)
        assert decision.allowed is False
        assert decision.reason == DecisionReason.IDENTITY_REQUIRED
        assert AdmissionDenied(decision).status_code == 400

    async def test_authenticated_user_is_fallback_key(self, gate, store):
        # CallerIdentity.user_id is a verified token subject
        await gate.admit(CallerIdentity(user_id="u-7"), is_voice=False)
        assert "user:u-7" in store.records


class TestDailyQuota:
    async def test_first_request_creates_record_with_count_one(self, gate, store):
        decision = await gate.admit(DEVICE, is_voice=False)
        assert decision.allowed is True
        assert decision.used == 1
        assert store.records["dev-1"].text_count == 1
        assert store.records["dev-1"].voice_count == 0

    async def test_limit_reached_denies_with_counts(self, gate):
        for _ in range(LIMITS[QuotaCategory.VOICE]):
            assert (await gate.admit(DEVICE, is_voice=True)).allowed
        decision = await gate.admit(DEVICE, is_voice=True)
        assert decision.allowed is False
        assert decision.reason == DecisionReason.LIMIT
        assert (decision.used, decision.limit) == (3, 3)
        assert decision.category == QuotaCategory.VOICE

        exc = AdmissionDenied(decision)
        assert exc.status_code == 429
        body = exc.to_dict()
        assert body["errorCode"] == "RATE_LIMIT_EXCEEDED"
        assert body["used"] == 3 and body["limit"] == 3 and body["category"] == "voice"

    async def test_denial_message_names_reset_time(self, gate):
        for _ in range(3):
            await gate.admit(DEVICE, is_voice=True)
        exc = AdmissionDenied(await gate.admit(DEVICE, is_voice=True))
        assert exc.message.endswith("Resets at 2026-03-11 00:00 UTC.")

    async def test_rolling_denial_message_uses_window_end(self, store, clock):
        gate = AdmissionGate(store, LIMITS, reset_policy=ResetPolicy.ROLLING_24H, clock=clock)
        for _ in range(3):
            await gate.admit(DEVICE, is_voice=True)
        exc = AdmissionDenied(await gate.admit(DEVICE, is_voice=True))
        assert "Resets at 2026-03-11 15:30 UTC." in exc.message
        assert "midnight" not in exc.message

    async def test_categories_counted_independently(self, gate):
        for _ in range(3):
            await gate.admit(DEVICE, is_voice=True)
        assert (await gate.admit(DEVICE, is_voice=False)).allowed is True

    async def test_reset_after_midnight(self, gate, store, clock):
        for _ in range(3):
            await gate.admit(DEVICE, is_voice=True)
        assert (await gate.admit(DEVICE, is_voice=True)).allowed is False

        clock.advance(hours=9)  # past 00:00 UTC
        decision = await gate.admit(DEVICE, is_voice=True)

        assert decision.allowed is True
        record = store.records["dev-1"]
        assert (record.voice_count, record.text_count) == (1, 0)
        assert record.reset_at == datetime(2026, 3, 12, tzinfo=timezone.utc)

    async def test_still_denied_before_boundary(self, gate, clock):
        for _ in range(3):
            await gate.admit(DEVICE, is_voice=True)
        clock.advance(hours=8)  # 23:30
        assert (await gate.admit(DEVICE, is_voice=True)).allowed is False

    def test_next_reset_utc_midnight(self, gate):
        now = datetime(2026, 3, 10, 23, 59, tzinfo=timezone.utc)
        assert gate.next_reset(now) == datetime(2026, 3, 11, tzinfo=timezone.utc)

    def test_next_reset_rolling(self, store, clock):
        gate = AdmissionGate(store, LIMITS, reset_policy=ResetPolicy.ROLLING_24H, clock=clock)
        assert gate.next_reset(clock.now) == clock.now + timedelta(hours=24)


class TestPremiumBypass:
    @pytest.fixture
    def premium(self, store):
        store.records["dev-1"] = QuotaRecord("dev-1", 0, 0, True, datetime(2026, 3, 11, tzinfo=timezone.utc))

    async def test_voice_never_denied_but_counted(self, gate, store, premium):
        for _ in range(5):
            decision = await gate.admit(DEVICE, is_voice=True)
            assert decision.allowed is True
        assert decision.reason == DecisionReason.PREMIUM_BYPASS
        assert store.records["dev-1"].voice_count == 5

    async def test_text_still_limited(self, gate, premium):
        for _ in range(5):
            await gate.admit(DEVICE, is_voice=False)
        assert (await gate.admit(DEVICE, is_voice=False)).allowed is False

    async def test_unflagged_record_is_limited(self, gate, store):
        for _ in range(3):
            await gate.admit(DEVICE, is_voice=True)
        decision = await gate.admit(DEVICE, is_voice=True)
        assert decision.reason == DecisionReason.LIMIT
        assert store.records["dev-1"].owns_pooled_credential is False


class TestLimitPrecedence:
    async def test_global_overrides_default(self, gate, store):
        store.globals[QuotaCategory.TEXT] = 1
        assert (await gate.admit(DEVICE, is_voice=False)).allowed
        assert (await gate.admit(DEVICE, is_voice=False)).allowed is False

    async def test_custom_overrides_global(self, gate, store):
        store.globals[QuotaCategory.TEXT] = 1
        store.custom["u-1"] = {QuotaCategory.TEXT: 2}
        assert (await gate.admit(DEVICE, is_voice=False)).allowed
        decision = await gate.admit(DEVICE, is_voice=False)
        assert decision.allowed and decision.limit == 2


class TestFailurePolicy:
    @pytest.fixture
    def broken_store(self):
        broken = AsyncMock(spec=AdmissionStore)
        broken.find_ban.side_effect = AdmissionStoreError("connection reset")
        return broken

    async def test_fail_open(self, broken_store):
        gate = AdmissionGate(broken_store, LIMITS, failure_policy=FailurePolicy.FAIL_OPEN)
        decision = await gate.admit(DEVICE, is_voice=True)
        assert decision.allowed is True
        assert decision.reason == DecisionReason.STORE_FAIL_OPEN

    async def test_fail_closed(self, broken_store):
        gate = AdmissionGate(broken_store, LIMITS, failure_policy=FailurePolicy.FAIL_CLOSED)
        decision = await gate.admit(DEVICE, is_voice=False)
        assert decision.allowed is False
        assert decision.reason == DecisionReason.STORE_UNAVAILABLE
        assert AdmissionDenied(decision).status_code == 503


class TestDecision:
    def test_to_dict_omits_empty_fields(self):
        assert Decision(True, DecisionReason.EXEMPT, QuotaCategory.TEXT).to_dict() == {
            "allowed": True,
            "reason": "exempt",
            "category": "text",
        }


# ==========================================================================
# SQL store
# ==========================================================================


class TestSqlAdmissionStore:
    @pytest.fixture
    def sql_store(self, session_factory):
        return SqlAdmissionStore(session_factory)

    async def test_first_request_persists_record(self, sql_store, clock, db):
        gate = AdmissionGate(sql_store, LIMITS, clock=clock)
        decision = await gate.admit(DEVICE, is_voice=False)
        assert decision.allowed and decision.used == 1

        row = (await db.execute(select(UsageLimit).where(UsageLimit.limit_key == "dev-1"))).scalar_one()
        assert (row.text_count, row.voice_count) == (1, 0)

    async def test_limit_and_reset(self, sql_store, clock, db):
        gate = AdmissionGate(sql_store, LIMITS, clock=clock)
        for _ in range(3):
            assert (await gate.admit(DEVICE, is_voice=True)).allowed
        assert (await gate.admit(DEVICE, is_voice=True)).allowed is False

        clock.advance(days=1)
        decision = await gate.admit(DEVICE, is_voice=True)
        assert decision.allowed and decision.used == 1

    async def test_bans_checked_in_order(self, sql_store, db):
        db.add_all([BannedDevice(device_id="dev-1", reason="device"), BannedUser(user_id="u-1", reason="user")])
        await db.commit()
        assert await sql_store.find_ban(DEVICE) == (BanType.DEVICE, "device")

        db.add(BannedIp(ip_address="10.0.0.1", reason="ip"))
        await db.commit()
        assert await sql_store.find_ban(DEVICE) == (BanType.IP, "ip")

        assert await sql_store.find_ban(CallerIdentity(device_id="other")) is None

    async def test_custom_and_global_limits(self, sql_store, db):
        db.add_all(
            [
                UserLimit(user_id="u-1", custom_voice_limit=10, custom_text_limit=None),
                GlobalSetting(key="default_text_limit", value="42"),
                GlobalSetting(key="default_voice_limit", value="not-a-number"),
            ]
        )
        await db.commit()
        assert await sql_store.custom_limit("u-1", QuotaCategory.VOICE) == 10
        assert await sql_store.custom_limit("u-1", QuotaCategory.TEXT) is None
        assert await sql_store.custom_limit("nobody", QuotaCategory.VOICE) is None
        assert await sql_store.global_limit(QuotaCategory.TEXT) == 42
        assert await sql_store.global_limit(QuotaCategory.VOICE) is None

    async def test_get_or_create_is_idempotent(self, sql_store, db):
        reset_at = datetime(2026, 3, 11, tzinfo=timezone.utc)
        first = await sql_store.get_or_create("dev-x", reset_at)
        second = await sql_store.get_or_create("dev-x", reset_at + timedelta(days=5))
        assert first.reset_at == second.reset_at == reset_at
        rows = (await db.execute(select(UsageLimit).where(UsageLimit.limit_key == "dev-x"))).scalars().all()
        assert len(rows) == 1

    async def test_conditional_increment_never_overshoots(self, sql_store):
        await sql_store.get_or_create("dev-c", datetime(2026, 3, 11, tzinfo=timezone.utc))
        results = await asyncio.gather(*(sql_store.increment("dev-c", QuotaCategory.TEXT, 4) for _ in range(10)))
        applied = [ok for ok, _ in results if ok]
        assert len(applied) == 4
        assert max(count for _, count in results) == 4

    async def test_unconditional_increment(self, sql_store):
        await sql_store.get_or_create("dev-u", datetime(2026, 3, 11, tzinfo=timezone.utc))
        for _ in range(3):
            await sql_store.increment("dev-u", QuotaCategory.VOICE, 1)
        assert await sql_store.increment("dev-u", QuotaCategory.VOICE, None) == (True, 2)

    async def test_reset_only_when_due(self, sql_store):
        reset_at = datetime(2026, 3, 11, tzinfo=timezone.utc)
        await sql_store.get_or_create("dev-r", reset_at)
        await sql_store.increment("dev-r", QuotaCategory.TEXT, None)

        early = await sql_store.reset_if_due("dev-r", reset_at - timedelta(minutes=1), reset_at + timedelta(days=1))
        assert early.text_count == 1 and early.reset_at == reset_at

        due = await sql_store.reset_if_due("dev-r", reset_at, reset_at + timedelta(days=1))
        assert due.text_count == 0 and due.reset_at == reset_at + timedelta(days=1)

    async def test_reads_stored_pooled_credential_flag(self, sql_store, db):
        reset_at = datetime(2026, 3, 11, tzinfo=timezone.utc)
        db.add(UsageLimit(limit_key="dev-p", voice_count=0, text_count=0, owns_pooled_credential=True, reset_at=reset_at))
        await db.commit()
        record = await sql_store.get_or_create("dev-p", reset_at)
        assert record.owns_pooled_credential is True

    async def test_database_errors_become_store_errors(self, sql_store, engine):
        async with engine.begin() as conn:
            await conn.run_sync(UsageLimit.__table__.drop)
        with pytest.raises(AdmissionStoreError):
            await sql_store.get_or_create("dev-z", datetime(2026, 3, 11, tzinfo=timezone.utc))
