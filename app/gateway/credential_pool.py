"""Credential Pool: health-aware sticky rotation over pooled speech credentials.

Health per credential comes from the provider's subscription endpoint and is
cached for ``cache_seconds``. INVALID is cached until the process restarts;
RATE_LIMITED is re-checked once its cooldown ends. Selection starts at the
cursor, scans the pool once and keeps the cursor on the credential it
returns, so consecutive requests stick to one credential until it fails.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import httpx

from app.core.exceptions import ServiceUnavailableError
from app.core.logging import shorten_secret
from app.core.metrics import POOL_CREDENTIALS, POOL_EXHAUSTED
from app.gateway.telemetry import CredentialSnapshotEvent, NullRecorder, TelemetryRecorder

logger = logging.getLogger(__name__)


class CredentialHealth(str, Enum):
    ACTIVE = "active"
    NEAR_LIMIT = "near_limit"
    EXHAUSTED = "exhausted"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


class PoolExhausted(ServiceUnavailableError):
    error_code = "SPEECH_UNAVAILABLE"

    def __init__(self, message: str = "Speech synthesis is temporarily unavailable, please retry later"):
        super().__init__(message)


class CredentialCheckError(Exception):
    """The status endpoint could not classify a credential this time."""


@dataclass
class CredentialStatus:
    key: str
    health: CredentialHealth
    checked_at: float
    character_count: int = 0
    character_limit: int = 0
    next_reset_at: datetime | None = None
    retry_at: float | None = None
    tier: str | None = None

    def __repr__(self) -> str:
        return f"CredentialStatus({shorten_secret(self.key)}, {self.health.value}, {self.character_count}/{self.character_limit})"

    @property
    def remaining(self) -> int:
        return max(self.character_limit - self.character_count, 0)

    @property
    def fraction(self) -> float:
        return self.character_count / self.character_limit if self.character_limit else 1.0

    @property
    def over_limit(self) -> bool:
        return self.character_count >= self.character_limit

    @property
    def usable(self) -> bool:
        return self.health in (CredentialHealth.ACTIVE, CredentialHealth.NEAR_LIMIT) and not self.over_limit

    def to_dict(self) -> dict:
        return {
            "key": shorten_secret(self.key),
            "status": self.health.value,
            "characterCount": self.character_count,
            "characterLimit": self.character_limit,
            "remainingCharacters": self.remaining,
            "usagePercent": round(self.fraction * 100, 1) if self.character_limit else None,
            "nextResetAt": self.next_reset_at.isoformat() if self.next_reset_at else None,
        }


def credential_hash(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


class CredentialPool:
    def __init__(
        self,
        keys: Iterable[str],
        client: httpx.AsyncClient | None = None,
        status_url: str = "https://api.elevenlabs.io/v1/user/subscription",
        cache_seconds: float = 60.0,
        cooldown_seconds: float = 60.0,
        near_limit_fraction: float = 0.8,
        recorder: TelemetryRecorder | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.keys = list(dict.fromkeys(keys))
        self.client = client
        self.status_url = status_url
        self.cache_seconds = cache_seconds
        self.cooldown_seconds = cooldown_seconds
        self.near_limit_fraction = near_limit_fraction
        self.recorder = recorder or NullRecorder()
        self._clock = clock
        self._cursor = 0
        self._cache: dict[str, CredentialStatus] = {}
        self._refresh_locks: dict[str, asyncio.Lock] = {k: asyncio.Lock() for k in self.keys}

    @property
    def cursor(self) -> int:
        return self._cursor

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def acquire(self) -> str:
        """Return the first usable credential from the cursor, scanning once."""
        if not self.keys:
            POOL_EXHAUSTED.inc()
            raise PoolExhausted("Speech synthesis is not configured")

        start = self._cursor
        count = len(self.keys)
        for offset in range(count):
            index = (start + offset) % count
            key = self.keys[index]
            try:
                status = await self.status(key)
            except CredentialCheckError as e:
                logger.warning("Skipping credential %s: %s", shorten_secret(key), e)
                continue
            if status.usable:
                if index != self._cursor:
                    logger.info("Pool cursor %d -> %d (%s)", self._cursor, index, shorten_secret(key))
                self._cursor = index
                return key

        POOL_EXHAUSTED.inc()
        logger.error("All %d pooled credentials are unusable", count)
        raise PoolExhausted()

    async def report_failure(self, key: str, status_code: int) -> None:
        """React to an upstream rejection observed while using ``key``."""
        if key not in self._refresh_locks:
            return
        if status_code == 429:
            logger.warning("Credential %s rate limited, rotating", shorten_secret(key))
            self._store(self._rate_limited(key))
        elif status_code == 401:
            logger.warning("Credential %s rejected as invalid, rotating", shorten_secret(key))
            self._store(CredentialStatus(key, CredentialHealth.INVALID, self._clock()))
        elif status_code in (402, 403):
            logger.warning("Credential %s refused (%d), re-checking quota", shorten_secret(key), status_code)
            try:
                await self.status(key, force=True)
            except CredentialCheckError as e:
                logger.warning("Re-check of %s failed: %s", shorten_secret(key), e)
        else:
            logger.info("Credential %s saw HTTP %d, no state change", shorten_secret(key), status_code)
            return
        self._rotate_past(key)

    def record_usage(self, key: str, characters: int) -> None:
        """Advance the cached character count after a successful synthesis."""
        status = self._cache.get(key)
        if status is None or status.health not in (CredentialHealth.ACTIVE, CredentialHealth.NEAR_LIMIT):
            return
        status.character_count += characters
        status.health = self._classify(status.character_count, status.character_limit)

    def _rotate_past(self, key: str) -> None:
        index = self.keys.index(key)
        if self._cursor == index:
            self._cursor = (index + 1) % len(self.keys)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _fresh(self, status: CredentialStatus | None) -> bool:
        if status is None:
            return False
        now = self._clock()
        if status.health == CredentialHealth.INVALID:
            return True
        if status.health == CredentialHealth.RATE_LIMITED:
            return status.retry_at is not None and now < status.retry_at
        return now - status.checked_at < self.cache_seconds

    async def status(self, key: str, force: bool = False) -> CredentialStatus:
        """Cached health, refreshed at most once per cache window."""
        cached = self._cache.get(key)
        if not force and self._fresh(cached):
            return cached
        async with self._refresh_locks[key]:
            cached = self._cache.get(key)
            if not force and self._fresh(cached):
                return cached
            status = await self._fetch(key)
            self._store(status)
            return status

    def _store(self, status: CredentialStatus) -> None:
        self._cache[status.key] = status
        self.recorder.record(
            CredentialSnapshotEvent(
                key_hash=credential_hash(status.key),
                short_key=shorten_secret(status.key),
                status=status.health.value,
                character_count=status.character_count,
                character_limit=status.character_limit,
                remaining_characters=status.remaining,
                is_over_limit=status.over_limit,
                is_near_limit=status.fraction >= self.near_limit_fraction,
                next_reset_at=status.next_reset_at,
            )
        )

    def _classify(self, used: int, limit: int) -> CredentialHealth:
        if used >= limit:
            return CredentialHealth.EXHAUSTED
        if used / limit >= self.near_limit_fraction:
            return CredentialHealth.NEAR_LIMIT
        return CredentialHealth.ACTIVE

    def _rate_limited(self, key: str) -> CredentialStatus:
        now = self._clock()
        previous = self._cache.get(key)
        status = CredentialStatus(key, CredentialHealth.RATE_LIMITED, now, retry_at=now + self.cooldown_seconds)
        if previous is not None:
            status.character_count = previous.character_count
            status.character_limit = previous.character_limit
            status.next_reset_at = previous.next_reset_at
        return status

    async def _fetch(self, key: str) -> CredentialStatus:
        headers = {"xi-api-key": key}
        try:
            if self.client is not None:
                resp = await self.client.get(self.status_url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    resp = await client.get(self.status_url, headers=headers)
        except httpx.HTTPError as e:
            raise CredentialCheckError(f"status request failed: {e}") from e

        now = self._clock()
        if resp.status_code == 401:
            return CredentialStatus(key, CredentialHealth.INVALID, now)
        if resp.status_code == 429:
            return self._rate_limited(key)
        if not resp.is_success:
            raise CredentialCheckError(f"status endpoint returned HTTP {resp.status_code}")

        try:
            data = resp.json()
            used = int(data.get("character_count", 0))
            limit = int(data.get("character_limit", 0))
        except (ValueError, TypeError, AttributeError) as e:
            raise CredentialCheckError(f"unreadable status body: {e}") from e

        reset_unix = data.get("next_character_count_reset_unix")
        status = CredentialStatus(
            key,
            self._classify(used, limit),
            now,
            character_count=used,
            character_limit=limit,
            next_reset_at=datetime.fromtimestamp(reset_unix, tz=timezone.utc) if reset_unix else None,
            tier=data.get("tier"),
        )
        logger.debug("Refreshed %r", status)
        return status

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def refresh_all(self) -> list[CredentialStatus]:
        results = await asyncio.gather(*(self.status(k) for k in self.keys), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, CredentialCheckError):
                raise result
        return [r for r in results if isinstance(r, CredentialStatus)]

    async def summary(self) -> dict:
        statuses = await self.refresh_all()
        counts = {h: 0 for h in CredentialHealth}
        for s in statuses:
            counts[s.health] += 1
        for health, n in counts.items():
            POOL_CREDENTIALS.labels(health=health.value).set(n)
        return {
            "totalKeys": len(self.keys),
            "checkedKeys": len(statuses),
            "activeKeys": counts[CredentialHealth.ACTIVE],
            "nearLimitKeys": counts[CredentialHealth.NEAR_LIMIT],
            "exhaustedKeys": counts[CredentialHealth.EXHAUSTED],
            "rateLimitedKeys": counts[CredentialHealth.RATE_LIMITED],
            "invalidKeys": counts[CredentialHealth.INVALID],
            "totalRemainingCharacters": sum(s.remaining for s in statuses if s.usable),
            "currentIndex": self._cursor,
            "keys": [s.to_dict() for s in statuses],
        }
