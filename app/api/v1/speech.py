"""Text-to-speech over the pooled credentials."""

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import Response

from app.core.dependencies import get_client_address, get_credential_pool, get_optional_user_id, get_speech_gateway
from app.core.rate_limit import STATUS_ENDPOINT_LIMIT, limiter
from app.gateway.admission import CallerIdentity
from app.gateway.credential_pool import CredentialPool
from app.gateway.speech import SpeechGateway, SpeechRequest
from app.schemas.common import ErrorResponse
from app.schemas.speech import PoolSummaryOut, SpeechRequestIn

router = APIRouter(prefix="/tts", tags=["tts"])


@router.post(
    "",
    response_class=Response,
    responses={
        200: {"content": {"audio/mpeg": {}}},
        403: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def synthesize(
    body: SpeechRequestIn,
    speech: SpeechGateway = Depends(get_speech_gateway),
    user_id: str | None = Depends(get_optional_user_id),
    ip_address: str | None = Depends(get_client_address),
    x_device_id: str | None = Header(None),
):
    audio = await speech.synthesize(
        SpeechRequest(
            voice_id=body.voice_id,
            text=body.text,
            identity=CallerIdentity(
                device_id=body.device_id or x_device_id,
                user_id=user_id,
                ip_address=ip_address,
            ),
            voice_settings=body.settings,
        )
    )
    return Response(content=audio, media_type="audio/mpeg", headers={"Cache-Control": "no-store"})


@router.get("/status", response_model=PoolSummaryOut)
@limiter.limit(STATUS_ENDPOINT_LIMIT)
async def pool_status(request: Request, pool: CredentialPool = Depends(get_credential_pool)):
    """Health of every pooled credential (keys shown shortened)."""
    return await pool.summary()
