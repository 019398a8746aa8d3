"""Bearer-token authentication for user operations.

User endpoints depend on :func:`get_current_user`, which validates an
``Authorization: Bearer <jwt>`` header (HS256, signed by the auth service
with ``API_JWT_SECRET``) and returns the ``sub`` claim as the user id.
Provider webhooks and ``/health`` do not use it: webhooks authenticate by
signature instead.
"""

from __future__ import annotations

import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request
from pydantic import BaseModel

from billing_api.config import APISettings
from billing_api.dependencies import SettingsDep

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    user_id: str
    email: str | None = None


def decode_token(token: str, settings: APISettings) -> AuthenticatedUser:
    """Validate *token* and return its identity.

    Raises
    ------
    HTTPException
        401 when the token is expired, malformed or has no ``sub``.
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token has expired") from exc
    except jwt.PyJWTError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthenticatedUser(user_id=sub, email=claims.get("email"))


async def get_current_user(request: Request, settings: SettingsDep) -> AuthenticatedUser:
    """FastAPI dependency returning the authenticated user."""
    auth_header = request.headers.get("authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = auth_header.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Authorization header must use Bearer scheme")

    user = decode_token(parts[1], settings)
    request.state.user_id = user.user_id
    return user


CurrentUserDep = Annotated[AuthenticatedUser, Depends(get_current_user)]
