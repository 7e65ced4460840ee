"""Authorization guard: caller resolution and owner-scoped access checks."""

from __future__ import annotations

from typing import Any, TypeVar

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from .config import settings
from .errors import NotFoundError, UnauthenticatedError

http_bearer = HTTPBearer(auto_error=False)

Row = TypeVar("Row", bound=dict)


def _decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except InvalidTokenError as exc:
        raise UnauthenticatedError("Invalid token") from exc


def resolve_caller(token: str | None) -> str:
    """
    Resolve the opaque caller id from an identity-provider token.

    Must run before any database access; there is no anonymous fallback.
    """
    if not token:
        raise UnauthenticatedError("Authentication required")

    payload = _decode_token(token)
    if payload.get("type", "access") != "access":
        raise UnauthenticatedError("Invalid token type")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise UnauthenticatedError("Invalid token subject")
    return subject.strip()


async def require_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(http_bearer),
) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthenticatedError("Authentication required")
    return resolve_caller(credentials.credentials)


def require_ownership(row: Row | None, caller_id: str, entity: str) -> Row:
    """
    Return the row when it belongs to the caller.

    Missing rows and rows owned by someone else raise the same NotFoundError.
    """
    if row is None or str(row.get("user_id")) != caller_id:
        raise NotFoundError(f"{entity} not found")
    return row
