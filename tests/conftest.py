"""Shared test fixtures — async SQLite DB per test + test client."""

import os
import uuid
from collections.abc import AsyncGenerator

# Settings are read at import time; point them at test values first
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

# Import all models so metadata is populated
import agentdesk.models  # noqa: F401
from agentdesk.core.database import get_session, get_session_factory
from agentdesk.main import app
from agentdesk.models.profile import SubscriptionPlan, UserProfile

VALID_FORM = {
    "contextoDecision": (
        "Tengo una oferta para mudarme a Monterrey y liderar un equipo nuevo, "
        "pero mi negocio actual apenas empieza a ser rentable."
    ),
    "timeline": "urgente",
    "alternativas": ["A", "B"],
    "criterios": ["Ingresos", "Familia", "Crecimiento"],
    "informacionFaltante": "No sé cuánto costaría vivir allá realmente.",
}


@pytest.fixture
async def engine(tmp_path):
    # File-backed so sessions opened by the stream relay see committed rows
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
async def client(session, test_session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session overrides."""

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def register(client: AsyncClient, email: str, password: str = "password1234") -> dict:
    """Register an account; returns the auth headers, user id and profile."""
    resp = await client.post("/v1/auth/register", json={
        "email": email,
        "password": password,
        "full_name": "Test User",
    })
    assert resp.status_code == 201, resp.text
    data = resp.json()
    return {
        "headers": {"Authorization": f"Bearer {data['access_token']}"},
        "user_id": data["profile"]["id"],
        "profile": data["profile"],
    }


async def create_session(client: AsyncClient, headers: dict, form: dict | None = None) -> dict:
    resp = await client.post("/v1/sessions", json={
        "agentType": "arquitecto-decisiones",
        "formData": form or VALID_FORM,
    }, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["session"]


async def set_usage(session: AsyncSession, user_id, *, plan: str | None = None, usage_count: int):
    """Force a profile's plan and counter, bypassing the API."""
    values: dict = {"usage_count": usage_count}
    if plan is not None:
        values["subscription_plan"] = SubscriptionPlan(plan)
    await session.execute(
        update(UserProfile).where(UserProfile.id == uuid.UUID(str(user_id))).values(**values)
    )
    await session.commit()
