"""
Identity-provider token handling.

Tokens are issued by the external identity provider; this service only
verifies them. `sub` carries the provider's user id (users.external_id).
create_access_token() exists for local development and tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from ead.config import get_settings


def create_access_token(external_id: str, expires_minutes: int | None = None) -> str:
    """
    Create a signed access token for a provider subject.

    Args:
        external_id: The identity provider's user id.
        expires_minutes: Lifetime override; defaults to the configured value.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    lifetime = expires_minutes if expires_minutes is not None else settings.jwt_access_token_expire_minutes
    payload: dict[str, Any] = {
        "sub": external_id,
        "iat": now,
        "exp": now + timedelta(minutes=lifetime),
        "iss": settings.jwt_issuer,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """
    Decode and verify a token.

    Raises:
        jwt.InvalidTokenError: On bad signature, expiry, issuer or missing subject.
    """
    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp", "iss"]},
    )
