"""Streaming chat relay endpoint."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import StreamingResponse

from app.core.config import settings
from app.core.dependencies import get_chat_gateway, get_client_address, get_optional_user_id
from app.core.exceptions import UnauthorizedError
from app.gateway.admission import CallerIdentity
from app.gateway.gateway import SSE_HEADERS, ChatCall, ChatContext, ChatGateway
from app.gateway.types import ChatMessage, ProviderFamily, Role, ToolSpec
from app.schemas.chat import StreamChatRequest
from app.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai-gateway", tags=["ai-gateway"])


@router.post(
    "/stream",
    response_class=StreamingResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def stream_chat(
    body: StreamChatRequest,
    request: Request,
    gateway: ChatGateway = Depends(get_chat_gateway),
    user_id: str | None = Depends(get_optional_user_id),
    ip_address: str | None = Depends(get_client_address),
    x_device_id: str | None = Header(None),
    x_provider_api_key: str | None = Header(None),
):
    """Relay one chat turn to the chosen provider as Server-Sent Events.

    Frames: ``{"chunk": ...}``, ``{"toolInvocation": ...}``, then ``[DONE]``
    or an error envelope. Admission failures are plain JSON errors.
    """
    if settings.chat_require_auth and user_id is None:
        raise UnauthorizedError("Authentication required")

    ctx = body.context
    call = ChatCall(
        provider=ProviderFamily(body.provider),
        identity=CallerIdentity(
            device_id=ctx.device_id or x_device_id,
            user_id=user_id,
            ip_address=ip_address,
        ),
        message=body.message,
        previous=[ChatMessage(role=Role(m.role), content=m.content) for m in body.previous_messages],
        tools=[ToolSpec(name=t.name, description=t.description, parameters=t.parameters) for t in body.tools],
        model=body.model,
        prompt_type=body.prompt_type,
        context=ChatContext(
            # Unverified body userId only labels telemetry
            user_id=user_id or ctx.user_id,
            session_id=ctx.session_id,
            coach_id=ctx.coach_id,
            feature_name=ctx.feature_name,
            is_voice_mode=ctx.is_voice_mode,
        ),
        caller_api_key=x_provider_api_key or None,
    )
    frames = await gateway.open_stream(call, request.is_disconnected)
    return StreamingResponse(frames, media_type="text/event-stream; charset=utf-8", headers=SSE_HEADERS)
