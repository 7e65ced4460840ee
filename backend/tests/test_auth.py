from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from conftest import make_token
from goalwise.auth import require_ownership, resolve_caller
from goalwise.errors import NotFoundError, UnauthenticatedError


def test_resolve_caller_returns_subject() -> None:
    assert resolve_caller(make_token("user_123")) == "user_123"


@pytest.mark.parametrize("token", [None, ""])
def test_resolve_caller_requires_a_token(token) -> None:
    with pytest.raises(UnauthenticatedError) as exc_info:
        resolve_caller(token)

    assert exc_info.value.message == "Authentication required"
    assert exc_info.value.status_code == 401


def test_resolve_caller_rejects_bad_signature() -> None:
    token = jwt.encode(
        {"sub": "user_123", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "some-other-secret",
        algorithm="HS256",
    )

    with pytest.raises(UnauthenticatedError, match="Invalid token"):
        resolve_caller(token)


def test_resolve_caller_rejects_expired_token() -> None:
    token = make_token("user_123", exp=datetime.now(timezone.utc) - timedelta(minutes=1))

    with pytest.raises(UnauthenticatedError, match="Invalid token"):
        resolve_caller(token)


def test_resolve_caller_rejects_non_access_token() -> None:
    with pytest.raises(UnauthenticatedError, match="Invalid token type"):
        resolve_caller(make_token("user_123", type="refresh"))


def test_resolve_caller_rejects_blank_subject() -> None:
    with pytest.raises(UnauthenticatedError, match="Invalid token subject"):
        resolve_caller(make_token("   "))


def test_require_ownership_hides_foreign_rows() -> None:
    row = {"id": "g1", "user_id": "user_123"}

    assert require_ownership(row, "user_123", "Goal") is row

    with pytest.raises(NotFoundError) as foreign:
        require_ownership(row, "user_456", "Goal")
    with pytest.raises(NotFoundError) as missing:
        require_ownership(None, "user_456", "Goal")

    assert foreign.value.message == missing.value.message == "Goal not found"
