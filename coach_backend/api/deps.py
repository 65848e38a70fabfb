"""Request dependencies: bearer-token identity.

Tokens are issued by the external auth provider; we only verify the HS256
signature (AUTH_JWT_SECRET, optional AUTH_JWT_AUDIENCE) and read ``sub``.
"""

import os
from dataclasses import dataclass

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from coach_backend.core.database import get_or_create_user
from coach_backend.core.errors import AuthenticationError

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    id: str
    plan: str


def decode_token(token: str) -> dict | None:
    """Verify a bearer token and return its claims, or None if invalid/expired."""
    secret = os.environ.get("AUTH_JWT_SECRET", "")
    if not secret:
        logger.error("auth.secret_missing")
        return None
    audience = os.environ.get("AUTH_JWT_AUDIENCE") or None
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_aud": audience is not None},
        )
    except jwt.ExpiredSignatureError:
        logger.info("auth.token_expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning("auth.token_invalid", error=str(e))
        return None


def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> CurrentUser | None:
    """Caller identity if a bearer token was sent, else None (guest).

    A token that is present but invalid is an error, not a guest.
    """
    if not credentials:
        return None
    payload = decode_token(credentials.credentials)
    if not payload:
        raise AuthenticationError("Invalid or expired token")
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Token has no subject")
    user = get_or_create_user(str(user_id))
    return CurrentUser(id=user.id, plan=user.plan)


def get_current_user(user: CurrentUser | None = Depends(get_optional_user)) -> CurrentUser:
    if user is None:
        raise AuthenticationError("Missing bearer token")
    return user
