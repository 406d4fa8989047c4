"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentdesk.api.v1 import v1_router
from agentdesk.core.config import get_settings
from agentdesk.core.database import init_db
from agentdesk.core.errors import register_exception_handlers

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: ensure tables exist (use Alembic in production)
    await init_db()
    if not _settings.jwt_secret_key:
        logger.warning("JWT_SECRET_KEY is not set; tokens are signed with an empty key")
    logger.info("Serving model %s", _settings.llm_model)
    yield


app = FastAPI(
    title="AgentDesk",
    version="0.1.0",
    description="Conversational AI agent personas with streamed replies and usage quotas",
    lifespan=lifespan,
)

register_exception_handlers(app)

# ── CORS ─────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
