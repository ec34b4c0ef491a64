from fastapi import APIRouter

from app.api.v1.bans import router as bans_router
from app.api.v1.chat import router as chat_router
from app.api.v1.speech import router as speech_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(chat_router)
api_v1_router.include_router(speech_router)
api_v1_router.include_router(bans_router)
