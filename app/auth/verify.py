"""
verify.py
---------
Purpose:
    Bearer token verification for tokens issued by the external auth service.

Notes:
    - HS256 tokens are verified with JWT_SECRET.
    - Asymmetric tokens (ES256/RS256) are verified against JWT_JWKS_URL; the
      JWKS client is created on first use and caches keys.
    - Provides `auth_dependency` for protected routes; it returns the decoded
      claims, "sub" being the caller's user id.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from app.config import settings

_security = HTTPBearer()
_jwk_client: PyJWKClient | None = None


def _get_jwk_client() -> PyJWKClient:
    global _jwk_client
    if _jwk_client is None:
        if not settings.JWT_JWKS_URL:
            raise RuntimeError("JWT_JWKS_URL is not configured")
        _jwk_client = PyJWKClient(settings.JWT_JWKS_URL)
    return _jwk_client


def _signing_key(token: str):
    algorithm = jwt.get_unverified_header(token).get("alg")
    if algorithm == "HS256":
        if not settings.JWT_SECRET:
            raise RuntimeError("JWT_SECRET is not configured")
        return settings.JWT_SECRET
    return _get_jwk_client().get_signing_key_from_jwt(token).key


def verify_jwt(token: str) -> dict:
    try:
        decoded = jwt.decode(
            token,
            _signing_key(token),
            algorithms=settings.JWT_ALGORITHMS,
            audience=settings.JWT_AUDIENCE,
            options={"verify_exp": True, "require": ["sub"]},
        )
        return decoded
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def user_role(claims: dict) -> str | None:
    """Application role: app_metadata.role, then user_role, then role."""
    app_metadata = claims.get("app_metadata") or {}
    return app_metadata.get("role") or claims.get("user_role") or claims.get("role")


def is_privileged(claims: dict) -> bool:
    return user_role(claims) in settings.PRIVILEGED_ROLES
