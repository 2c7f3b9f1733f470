"""Tests for JWT helpers."""

from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from hub.auth import create_access_token, decode_token, get_current_user_id


def test_token_round_trip():
    token = create_access_token("user-1", extra_claims={"device": "laptop"})
    payload = decode_token(token)

    assert payload["sub"] == "user-1"
    assert payload["device"] == "laptop"
    assert payload["exp"] > payload["iat"]


def test_expired_token_rejected():
    token = create_access_token("user-1", expires_delta=timedelta(seconds=-5))

    with pytest.raises(HTTPException) as exc_info:
        decode_token(token)
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_current_user_from_credentials():
    credentials = HTTPAuthorizationCredentials(
        scheme="Bearer", credentials=create_access_token("user-7")
    )
    assert await get_current_user_id(credentials) == "user-7"


@pytest.mark.asyncio
async def test_missing_credentials_unauthorized():
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user_id(None)
    assert exc_info.value.status_code == 401
