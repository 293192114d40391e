"""Tests for bearer token validation."""

from datetime import timedelta

import pytest
from jose import jwt

from reconciler.core.config import settings
from reconciler.services.auth_service import AuthService, InvalidTokenError


def test_token_round_trip_returns_user_id():
    token = AuthService.create_access_token(42)

    assert AuthService.decode_token(token) == 42


def test_expired_token_rejected():
    token = AuthService.create_access_token(42, expires_delta=timedelta(seconds=-10))

    with pytest.raises(InvalidTokenError):
        AuthService.decode_token(token)


def test_wrong_signature_rejected():
    token = jwt.encode({"sub": "42", "type": "access"}, "other-secret", algorithm="HS256")

    with pytest.raises(InvalidTokenError):
        AuthService.decode_token(token)


def test_refresh_token_rejected():
    token = jwt.encode(
        {"sub": "42", "type": "refresh"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(InvalidTokenError):
        AuthService.decode_token(token)


def test_non_numeric_subject_rejected():
    token = jwt.encode(
        {"sub": "alice", "type": "access"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(InvalidTokenError):
        AuthService.decode_token(token)


@pytest.mark.asyncio
async def test_validate_access_token_loads_user(db_session, student_user):
    token = AuthService.create_access_token(student_user.id)

    user = await AuthService(db_session).validate_access_token(token)

    assert user.id == student_user.id


@pytest.mark.asyncio
async def test_validate_access_token_unknown_user(db_session):
    token = AuthService.create_access_token(12345)

    with pytest.raises(InvalidTokenError):
        await AuthService(db_session).validate_access_token(token)
