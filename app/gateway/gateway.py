"""Chat Gateway: per-request orchestration of admission, streaming and telemetry.

Flow for one chat request:
  1. Admission (AdmissionDenied raised before any response is started)
  2. Provider resolution (ProviderNotConfigured raised before streaming)
  3. SSE relay: request telemetry → normalized events as gateway frames →
     ``[DONE]`` or an error envelope → response/error telemetry
"""

from __future__ import annotations

import json
import logging
import time
import traceback
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.core.exceptions import AppError
from app.core.metrics import STREAM_DURATION, STREAMS_COMPLETED, TOOL_INVOCATIONS
from app.gateway.admission import AdmissionDenied, AdmissionGate, CallerIdentity, Decision
from app.gateway.normalizer import StreamNormalizer, StreamTimeout
from app.gateway.telemetry import (
    DeviceSightingEvent,
    InteractionEvent,
    NullRecorder,
    TelemetryRecorder,
)
from app.gateway.types import (
    CancellationToken,
    ChatMessage,
    ProviderFamily,
    StreamRequest,
    TextDelta,
    ToolSpec,
)
from app.gateway.vendor_adapters import BaseVendorAdapter, UpstreamRejected, get_adapter

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
DONE_FRAME = "data: [DONE]\n\n"


class ProviderNotConfigured(AppError):
    status_code = 500
    error_code = "PROVIDER_NOT_CONFIGURED"


@dataclass
class ChatContext:
    user_id: str | None = None
    session_id: str | None = None
    coach_id: str | None = None
    feature_name: str | None = None
    is_voice_mode: bool = False


@dataclass
class ChatCall:
    """A validated client request, independent of the HTTP layer."""

    provider: ProviderFamily
    identity: CallerIdentity
    message: str = ""
    previous: list[ChatMessage] = field(default_factory=list)
    tools: list[ToolSpec] = field(default_factory=list)
    model: str | None = None
    prompt_type: str | None = None
    context: ChatContext = field(default_factory=ChatContext)
    caller_api_key: str | None = None


def sse_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class ChatGateway:
    def __init__(
        self,
        admission: AdmissionGate,
        normalizer: StreamNormalizer,
        provider_keys: dict[ProviderFamily, str],
        adapter_options: dict[ProviderFamily, dict[str, Any]] | None = None,
        default_models: dict[ProviderFamily, str] | None = None,
        recorder: TelemetryRecorder | None = None,
    ):
        self.admission = admission
        self.normalizer = normalizer
        self.provider_keys = provider_keys
        self.adapter_options = adapter_options or {}
        self.default_models = default_models or {}
        self.recorder = recorder or NullRecorder()

    async def admit(self, call: ChatCall) -> Decision:
        decision = await self.admission.admit(
            call.identity,
            is_voice=call.context.is_voice_mode,
            prompt_category=call.prompt_type,
            caller_credential=bool(call.caller_api_key),
        )
        if not decision.allowed:
            raise AdmissionDenied(decision)
        return decision

    def adapter_for(self, call: ChatCall) -> BaseVendorAdapter:
        api_key = call.caller_api_key or self.provider_keys.get(call.provider)
        if not api_key:
            raise ProviderNotConfigured(f"{call.provider.value} API key not configured")
        return get_adapter(call.provider, api_key, **self.adapter_options.get(call.provider, {}))

    async def open_stream(
        self,
        call: ChatCall,
        is_disconnected: Callable[[], Awaitable[bool]],
    ) -> AsyncIterator[str]:
        """Admit and resolve the provider, then hand back the SSE frame iterator."""
        await self.admit(call)
        adapter = self.adapter_for(call)
        request = StreamRequest(
            provider=call.provider,
            model=call.model or self.default_models.get(call.provider) or adapter.default_model,
            api_key=adapter.api_key,
            message=call.message,
            messages=call.previous,
            tools=call.tools,
        )
        return self.relay(call, adapter, request, is_disconnected)

    async def relay(
        self,
        call: ChatCall,
        adapter: BaseVendorAdapter,
        request: StreamRequest,
        is_disconnected: Callable[[], Awaitable[bool]],
    ) -> AsyncIterator[str]:
        ctx = call.context
        provider = call.provider.value
        start = time.monotonic()
        self.recorder.record(
            InteractionEvent(
                request_id=request.request_id,
                interaction_type="request",
                status="pending",
                provider=provider,
                model=request.model,
                prompt_type=call.prompt_type,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                coach_id=ctx.coach_id,
                feature_name=ctx.feature_name,
                message_length=len(call.message),
                details={"previousMessagesCount": len(call.previous), "hasTools": bool(call.tools)},
            )
        )
        if call.identity.user_id and call.identity.device_id:
            self.recorder.record(
                DeviceSightingEvent(call.identity.user_id, call.identity.device_id, call.identity.ip_address)
            )

        cancel = CancellationToken()
        session = self.normalizer.open(adapter, request, cancel)
        completed = False
        failed = False
        try:
            async with aclosing(session.events()) as events:
                async for event in events:
                    if await is_disconnected():
                        logger.info("Client disconnected, stopping stream %s", request.request_id)
                        cancel.cancel()
                        break
                    if isinstance(event, TextDelta):
                        yield sse_frame({"chunk": event.text})
                    else:
                        TOOL_INVOCATIONS.labels(provider=provider).inc()
                        yield sse_frame({"toolInvocation": event.to_dict()})
            completed = not cancel.cancelled and not session.result.aborted
            if completed:
                yield DONE_FRAME
        except Exception as exc:
            failed = True
            code = self._error_code(exc)
            if isinstance(exc, (UpstreamRejected, StreamTimeout)):
                logger.warning("Stream %s failed [%s]: %s", request.request_id, code, exc)
            else:
                logger.exception("Stream %s failed unexpectedly", request.request_id)
            self._record_error(call, request, exc, code, start)
            yield sse_frame(self._error_envelope(call, request, exc, code))
        finally:
            elapsed = time.monotonic() - start
            outcome = "error" if failed else ("success" if completed else "aborted")
            STREAMS_COMPLETED.labels(provider=provider, outcome=outcome).inc()
            STREAM_DURATION.labels(provider=provider).observe(elapsed)
            if not failed:
                self.recorder.record(
                    InteractionEvent(
                        request_id=request.request_id,
                        interaction_type="response",
                        status="success",
                        provider=provider,
                        model=request.model,
                        prompt_type=call.prompt_type,
                        user_id=ctx.user_id,
                        session_id=ctx.session_id,
                        coach_id=ctx.coach_id,
                        feature_name=ctx.feature_name,
                        message_length=len(call.message),
                        response_length=session.result.total_chars,
                        tokens_used=session.result.tokens_used,
                        response_time_ms=int(elapsed * 1000),
                        stream_aborted=not completed,
                        details={"toolCalls": session.result.tool_calls},
                    )
                )

    @staticmethod
    def _error_code(exc: Exception) -> str:
        if isinstance(exc, (UpstreamRejected, StreamTimeout)):
            return exc.error_code
        return "UNKNOWN"

    @staticmethod
    def _error_envelope(call: ChatCall, request: StreamRequest, exc: Exception, code: str) -> dict[str, Any]:
        return {
            "error": str(exc) or "Unknown error occurred",
            "errorType": type(exc).__name__,
            "errorCode": code,
            "provider": call.provider.value,
            "model": request.model,
            "promptType": call.prompt_type or "unknown",
            "requestId": request.request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": {
                "messageLength": len(call.message),
                "previousMessagesCount": len(call.previous),
                "hasTools": bool(call.tools),
                "userId": call.context.user_id or "unknown",
                "sessionId": call.context.session_id,
                "coachId": call.context.coach_id,
            },
        }

    def _record_error(self, call: ChatCall, request: StreamRequest, exc: Exception, code: str, start: float) -> None:
        ctx = call.context
        self.recorder.record(
            InteractionEvent(
                request_id=request.request_id,
                interaction_type="error",
                status="error",
                provider=call.provider.value,
                model=request.model,
                prompt_type=call.prompt_type,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                coach_id=ctx.coach_id,
                feature_name=ctx.feature_name,
                message_length=len(call.message),
                response_time_ms=int((time.monotonic() - start) * 1000),
                error_code=code,
                error_message=str(exc),
                stack_trace="".join(traceback.format_exception(exc)),
                details={
                    "errorType": type(exc).__name__,
                    "upstreamStatus": getattr(exc, "status_code", None),
                    "previousMessagesCount": len(call.previous),
                    "hasTools": bool(call.tools),
                },
            )
        )
