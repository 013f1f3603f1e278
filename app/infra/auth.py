from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
JWT_ISSUER = os.getenv("JWT_ISSUER") or None
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None
JWT_LEEWAY_SECONDS = int(os.getenv("JWT_LEEWAY_SECONDS", "30"))


def create_access_token(
    *,
    user_id: str,
    expires_minutes: int | None = None,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    # The identity provider issues tokens in production; this mints them for tests and scripts.
    issued_at = datetime.now(UTC)
    claims: dict[str, Any] = dict(extra_claims or {})
    claims["sub"] = user_id
    claims["iat"] = issued_at
    claims["exp"] = issued_at + timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    if JWT_ISSUER:
        claims["iss"] = JWT_ISSUER
    if JWT_AUDIENCE:
        claims["aud"] = JWT_AUDIENCE
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify a bearer token and return its claims.

    Raises ``jwt.InvalidTokenError`` for bad signatures, expiry or issuer/audience
    mismatch, and ``ValueError`` when the token names no subject.
    """
    claims = jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALGORITHM],
        issuer=JWT_ISSUER,
        audience=JWT_AUDIENCE,
        leeway=JWT_LEEWAY_SECONDS,
        options={"require": ["sub", "exp"]},
    )
    if not isinstance(claims.get("sub"), str) or not claims["sub"]:
        raise ValueError("token has no subject")
    return claims
