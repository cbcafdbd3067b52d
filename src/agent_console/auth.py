"""Caller identity for chat routes."""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


ACCESS_TOKEN_COOKIE = "access_token"
USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: Optional[str] = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _verification_key(settings: Settings) -> str:
    """Return the HMAC secret or PEM public key used to verify tokens.

    Asymmetric keys may be supplied base64-encoded so they fit on one line.
    """

    if settings.jwt_secret is None:
        raise _unauthorized("Token verification is not configured")
    key = settings.jwt_secret.get_secret_value()
    if settings.jwt_algorithm.upper().startswith("HS") or "BEGIN" in key:
        return key
    try:
        return base64.b64decode(key, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return key


def decode_access_token(token: str, settings: Settings) -> dict[str, Any]:
    return jwt.decode(
        token,
        _verification_key(settings),
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
    )


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if header and header.startswith("Bearer "):
        return header[7:].strip() or None
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


async def get_current_user(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    """Resolve the caller from a proxy header, bearer token, or cookie."""

    if settings.trust_user_id_header:
        user_id = request.headers.get(USER_ID_HEADER)
        if user_id:
            return CurrentUser(id=user_id, role=request.headers.get(USER_ROLE_HEADER))

    token = _bearer_token(request)
    if not token:
        raise _unauthorized("Unauthorized")

    try:
        payload = decode_access_token(token, settings)
    except JWTError as exc:
        logger.debug("Rejected access token: %s", exc)
        raise _unauthorized("Invalid or expired token") from exc

    user_id = payload.get("userId") or payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        logger.warning("Access token is missing a user id claim")
        raise _unauthorized("Invalid or expired token")

    role = payload.get("role")
    return CurrentUser(id=user_id, role=role if isinstance(role, str) else None)


__all__ = [
    "ACCESS_TOKEN_COOKIE",
    "CurrentUser",
    "decode_access_token",
    "get_current_user",
]
