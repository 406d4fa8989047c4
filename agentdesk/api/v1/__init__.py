"""V1 API router aggregation."""

from fastapi import APIRouter

from agentdesk.api.v1.auth import router as auth_router
from agentdesk.api.v1.chat import router as chat_router
from agentdesk.api.v1.sessions import router as sessions_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(auth_router)
v1_router.include_router(sessions_router)
v1_router.include_router(chat_router)
