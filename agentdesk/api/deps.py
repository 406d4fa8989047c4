"""FastAPI dependencies for authentication, DB access and the model client."""

import uuid
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentdesk.core.database import get_session, get_session_factory
from agentdesk.core.errors import Unauthenticated
from agentdesk.core.security import decode_jwt
from agentdesk.services.llm_stream import ModelStreamClient, get_model_client

# Missing credentials are reported as 401 by get_auth_context, not 403
bearer_scheme = HTTPBearer(auto_error=False)


class AuthContext:
    """Resolved identity carried through a request."""

    __slots__ = ("user_id",)

    def __init__(self, user_id: uuid.UUID) -> None:
        self.user_id = user_id


async def get_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> AuthContext:
    """Resolve a bearer JWT to an AuthContext."""
    if credentials is None or not credentials.credentials:
        raise Unauthenticated()

    try:
        payload = decode_jwt(credentials.credentials)
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc

    try:
        return AuthContext(user_id=uuid.UUID(payload["sub"]))
    except (KeyError, ValueError, TypeError) as exc:
        raise Unauthenticated("Malformed token payload") from exc


# Typed shorthand for use in route signatures
Auth = Annotated[AuthContext, Depends(get_auth_context)]
Session = Annotated[AsyncSession, Depends(get_session)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
ModelClient = Annotated[ModelStreamClient, Depends(get_model_client)]
