from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from dataclasses import dataclass, field

import httpx
import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

# Override settings for tests (before the engine module is imported)
settings.database_url = "sqlite+aiosqlite://"
settings.jwt_secret_key = "test-secret-key-that-is-at-least-32-bytes-long"
settings.app_env = "test"
settings.openai_api_key = "sk-test-openai"
settings.anthropic_api_key = "sk-ant-test"
settings.elevenlabs_api_keys = "sk_pool_key_alpha_000000000001,sk_pool_key_bravo_000000000002"

from app.core.dependencies import GatewayComponents, build_components, get_components  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.db.postgres import get_db  # noqa: E402
from app.gateway.telemetry import TelemetryRecorder  # noqa: E402
from app.main import app  # noqa: E402


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    # File-backed so background telemetry writes get their own connections
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Upstream providers
# ---------------------------------------------------------------------------


def sse_frames(*events: dict | str) -> list[bytes]:
    return [f"data: {e if isinstance(e, str) else json.dumps(e)}\n\n".encode() for e in events]


def streamed(chunks: list[bytes], delay: float = 0.0) -> httpx.Response:
    """200 text/event-stream response whose body arrives chunk by chunk."""

    async def body() -> AsyncIterator[bytes]:
        for chunk in chunks:
            if delay:
                await asyncio.sleep(delay)
            yield chunk

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


@pytest.fixture
def sse() -> Callable[..., httpx.Response]:
    """Build a streamed SSE response from JSON events (or raw strings like "[DONE]")."""

    def _make(*events: dict | str, delay: float = 0.0) -> httpx.Response:
        return streamed(sse_frames(*events), delay=delay)

    return _make


@pytest.fixture
def raw_stream() -> Callable[..., httpx.Response]:
    """Build a streamed response from raw byte chunks, split wherever the test wants."""
    return streamed


@dataclass
class UpstreamRouter:
    """httpx.MockTransport handler dispatching on (method, path)."""

    routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = field(default_factory=dict)
    calls: list[httpx.Request] = field(default_factory=list)

    def add(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method, path)] = handler

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.calls if r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": {"message": f"no route for {request.url.path}"}})
        return handler(request)


@pytest.fixture
def upstream() -> UpstreamRouter:
    return UpstreamRouter()


@pytest.fixture
async def http_client(upstream) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as c:
        yield c


class MemoryRecorder(TelemetryRecorder):
    def __init__(self) -> None:
        self.events: list = []

    def record(self, event) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> list:
        return [e for e in self.events if e.kind == kind]


@pytest.fixture
def recorder() -> MemoryRecorder:
    return MemoryRecorder()


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture
async def components(session_factory, http_client) -> AsyncGenerator[GatewayComponents, None]:
    comps = build_components(settings, session_factory, http_client=http_client)
    yield comps
    await comps.recorder.drain()


def create_access_token(user_id: str, expires_minutes: int = 60, token_type: str = "access") -> str:
    """Issue a token the way the upstream auth service does."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": user_id, "exp": expire, "type": token_type}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


@pytest.fixture
def access_token() -> Callable[..., str]:
    return create_access_token


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _make


@pytest.fixture
async def client(components, session_factory) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_components] = lambda: components
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
