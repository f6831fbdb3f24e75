import time

import jwt
import pytest
from fastapi import HTTPException

from app.auth.verify import is_privileged, user_role, verify_jwt

SECRET = "test-secret-with-enough-length-for-hs256"


@pytest.fixture(autouse=True)
def jwt_settings(monkeypatch):
    monkeypatch.setattr("app.auth.verify.settings.JWT_SECRET", SECRET)
    monkeypatch.setattr("app.auth.verify.settings.JWT_AUDIENCE", "authenticated")


def make_token(**overrides) -> str:
    claims = {"sub": "user-123", "aud": "authenticated", "exp": int(time.time()) + 300}
    claims.update(overrides)
    return jwt.encode(claims, SECRET, algorithm="HS256")


def test_valid_token_returns_claims():
    claims = verify_jwt(make_token(role="hospital"))

    assert claims["sub"] == "user-123"
    assert claims["role"] == "hospital"


@pytest.mark.parametrize(
    "token",
    [
        make_token(exp=int(time.time()) - 10),
        make_token(aud="someone-else"),
        jwt.encode({"sub": "user-123", "aud": "authenticated"}, "wrong-secret-of-enough-length"),
        "not-a-jwt",
    ],
)
def test_invalid_tokens_are_401(token):
    with pytest.raises(HTTPException) as exc:
        verify_jwt(token)

    assert exc.value.status_code == 401


def test_missing_secret_is_401(monkeypatch):
    monkeypatch.setattr("app.auth.verify.settings.JWT_SECRET", None)

    with pytest.raises(HTTPException) as exc:
        verify_jwt(make_token())

    assert exc.value.status_code == 401


def test_role_lookup_order():
    assert user_role({"app_metadata": {"role": "admin"}, "role": "authenticated"}) == "admin"
    assert user_role({"user_role": "hospital"}) == "hospital"
    assert user_role({"sub": "x"}) is None
    assert is_privileged({"role": "hospital"}) is True
    assert is_privileged({"role": "authenticated"}) is False
