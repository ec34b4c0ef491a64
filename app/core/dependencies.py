"""FastAPI dependencies: caller identity and the long-lived gateway components.

Components (shared HTTP client, credential pool, gateways, telemetry) are
built once per application and kept on ``app.state``; handlers receive them
through the getters below, which tests replace via ``dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings
from app.core.exceptions import UnauthorizedError
from app.core.rate_limit import client_address
from app.core.security import decode_access_token
from app.db.postgres import async_session_factory
from app.gateway.admission import AdmissionGate, FailurePolicy, QuotaCategory, ResetPolicy
from app.gateway.credential_pool import CredentialPool
from app.gateway.gateway import ChatGateway
from app.gateway.normalizer import StreamNormalizer
from app.gateway.speech import SpeechGateway
from app.gateway.telemetry import SqlTelemetryRecorder, TelemetryRecorder
from app.gateway.types import ProviderFamily
from app.services.admission_store import SqlAdmissionStore


@dataclass
class GatewayComponents:
    http_client: httpx.AsyncClient
    recorder: TelemetryRecorder
    pool: CredentialPool
    chat: ChatGateway
    speech: SpeechGateway

    async def aclose(self) -> None:
        await self.recorder.drain()
        await self.http_client.aclose()


def build_components(
    cfg: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient | None = None,
) -> GatewayComponents:
    client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.stream_timeout_seconds, connect=cfg.upstream_connect_timeout_seconds)
    )
    recorder = SqlTelemetryRecorder(session_factory)
    store = SqlAdmissionStore(session_factory)
    limits = {QuotaCategory.VOICE: cfg.default_voice_limit, QuotaCategory.TEXT: cfg.default_text_limit}
    exempt = cfg.exempt_prompt_type_set

    def gate(policy: str) -> AdmissionGate:
        return AdmissionGate(
            store,
            limits,
            reset_policy=ResetPolicy(cfg.quota_reset_policy),
            failure_policy=FailurePolicy(policy),
            exempt_categories=exempt,
            recorder=recorder,
        )

    pool = CredentialPool(
        cfg.elevenlabs_keys,
        client=client,
        status_url=f"{cfg.elevenlabs_api_url.rstrip('/')}/v1/user/subscription",
        cache_seconds=cfg.pool_cache_seconds,
        cooldown_seconds=cfg.pool_rate_limit_cooldown_seconds,
        near_limit_fraction=cfg.pool_near_limit_fraction,
        recorder=recorder,
    )
    chat = ChatGateway(
        admission=gate(cfg.chat_gate_failure_policy),
        normalizer=StreamNormalizer(
            client=client,
            budget_seconds=cfg.stream_timeout_seconds,
            connect_timeout=cfg.upstream_connect_timeout_seconds,
        ),
        provider_keys={
            ProviderFamily.OPENAI: cfg.openai_api_key,
            ProviderFamily.ANTHROPIC: cfg.anthropic_api_key,
        },
        adapter_options={
            ProviderFamily.OPENAI: {"api_url": cfg.openai_api_url},
            ProviderFamily.ANTHROPIC: {
                "api_url": cfg.anthropic_api_url,
                "api_version": cfg.anthropic_version,
                "max_tokens": cfg.anthropic_max_tokens,
            },
        },
        default_models={
            ProviderFamily.OPENAI: cfg.openai_default_model,
            ProviderFamily.ANTHROPIC: cfg.anthropic_default_model,
        },
        recorder=recorder,
    )
    speech = SpeechGateway(
        pool,
        admission=gate(cfg.voice_gate_failure_policy),
        client=client,
        api_url=cfg.elevenlabs_api_url,
        model_id=cfg.elevenlabs_model_id,
        recorder=recorder,
    )
    return GatewayComponents(http_client=client, recorder=recorder, pool=pool, chat=chat, speech=speech)


def get_components(request: Request) -> GatewayComponents:
    components = getattr(request.app.state, "components", None)
    if components is None:
        components = build_components(settings, async_session_factory)
        request.app.state.components = components
    return components


def get_chat_gateway(components: GatewayComponents = Depends(get_components)) -> ChatGateway:
    return components.chat


def get_speech_gateway(components: GatewayComponents = Depends(get_components)) -> SpeechGateway:
    return components.speech


def get_credential_pool(components: GatewayComponents = Depends(get_components)) -> CredentialPool:
    return components.pool


async def get_optional_user_id(
    authorization: str | None = Header(None, description="Bearer <token>"),
) -> str | None:
    if authorization is None:
        return None
    if not authorization.startswith("Bearer "):
        raise UnauthorizedError("Invalid authorization header")
    return decode_access_token(authorization[7:])


async def get_client_address(request: Request) -> str | None:
    address = client_address(request)
    return address or None
