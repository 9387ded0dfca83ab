"""Centralised JWT helpers for access tokens.

Uses HS256 with the application's secret key. Validates standard claims
and expected issuer/audience values.
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Dict

import jwt
from jwt import InvalidTokenError

from pinmeet.settings import settings


ISSUER = "pinmeet-auth"
AUDIENCE = "pinmeet-api"


def encode_access(payload: dict[str, object], *, ttl: timedelta | None = None) -> str:
    """Encode an access token with issuer/audience/expiry defaults."""
    now = int(time.time())
    lifetime = ttl or timedelta(minutes=settings.access_ttl_minutes)
    body: Dict[str, Any] = {
        "iss": ISSUER,
        "aud": AUDIENCE,
        "iat": now,
        "exp": now + int(lifetime.total_seconds()),
    }
    body.update(payload)
    return jwt.encode(body, settings.secret_key, algorithm="HS256")


def decode_access(token: str) -> dict[str, object]:
    """Decode and validate an access token.

    Raises jwt.InvalidTokenError subclasses on failure.
    """
    payload = jwt.decode(
        token,
        settings.secret_key,
        algorithms=["HS256"],
        audience=AUDIENCE,
        issuer=ISSUER,
        leeway=5,
        options={"require": ["exp", "iat", "iss", "aud", "sub"]},
    )
    if not str(payload.get("sub") or "").strip():
        raise InvalidTokenError("missing_claim:sub")
    return payload  # type: ignore[return-value]
