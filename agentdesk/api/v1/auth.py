"""Authentication endpoints — register, login and current profile."""

from fastapi import APIRouter, status
from pydantic import BaseModel, EmailStr, Field
from sqlmodel import select

from agentdesk.api.deps import Auth, Session
from agentdesk.core.errors import Conflict, Unauthenticated
from agentdesk.core.quota import effective_plan_limit
from agentdesk.core.security import create_jwt, hash_password, verify_password
from agentdesk.models.profile import ProfileRead, UserProfile

router = APIRouter(prefix="/auth", tags=["auth"])


# ── Schemas ──────────────────────────────────────────────────

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    full_name: str | None = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    profile: ProfileRead


class MeResponse(BaseModel):
    profile: ProfileRead
    usage_limit: int
    usage_remaining: int


def _token_response(profile: UserProfile) -> TokenResponse:
    return TokenResponse(
        access_token=create_jwt(subject=str(profile.id)),
        profile=ProfileRead.model_validate(profile),
    )


# ── Routes ───────────────────────────────────────────────────

@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, session: Session) -> TokenResponse:
    """Create an account on the free plan and return a JWT."""
    existing = await session.execute(
        select(UserProfile).where(UserProfile.email == body.email.lower())
    )
    if existing.scalar_one_or_none():
        raise Conflict("Email is already registered")

    profile = UserProfile(
        email=body.email.lower(),
        password_hash=hash_password(body.password),
        full_name=body.full_name,
    )
    session.add(profile)
    await session.commit()
    await session.refresh(profile)
    return _token_response(profile)


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, session: Session) -> TokenResponse:
    """Authenticate with email + password, receive a JWT."""
    result = await session.execute(
        select(UserProfile).where(UserProfile.email == body.email.lower())
    )
    profile = result.scalar_one_or_none()

    if profile is None or not verify_password(body.password, profile.password_hash):
        raise Unauthenticated("Invalid email or password")

    return _token_response(profile)


@router.get("/me", response_model=MeResponse)
async def get_me(auth: Auth, session: Session) -> MeResponse:
    """Return the caller's profile with plan ceiling and remaining messages."""
    profile = await session.get(UserProfile, auth.user_id, populate_existing=True)
    if profile is None:
        raise Unauthenticated()

    limit = effective_plan_limit(profile.subscription_plan)
    return MeResponse(
        profile=ProfileRead.model_validate(profile),
        usage_limit=limit,
        usage_remaining=max(limit - profile.usage_count, 0),
    )
