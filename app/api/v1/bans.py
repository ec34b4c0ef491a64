from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.rate_limit import STATUS_ENDPOINT_LIMIT, limiter
from app.db.postgres import get_db
from app.schemas.ban import BanStatusResponse
from app.services.ban_service import get_ban_status

router = APIRouter(prefix="/bans", tags=["bans"])


@router.get("/status", response_model=BanStatusResponse)
@limiter.limit(STATUS_ENDPOINT_LIMIT)
async def ban_status(
    request: Request,
    user_id: str = Query(..., min_length=1, max_length=255),
    db: AsyncSession = Depends(get_db),
):
    return await get_ban_status(db, user_id)
