"""Utilities for issuing and validating bearer JWTs."""

from __future__ import annotations

import time
from typing import Any

import jwt

from ..config import get_settings

ADMIN_SCOPE = "reconciliation:admin"
ACCOUNT_SCOPE = "account:lifecycle"


def issue_access_token(*, subject: str, scopes: list[str] | None = None) -> tuple[str, int]:
    """Create a signed JWT for an account holder or an operator.

    Parameters
    ----------
    subject:
        Account or operator identifier to embed in the token `sub` claim.
    scopes:
        Optional scope list; defaults to the account lifecycle scope.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = settings.jwt_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "scopes": scopes or [ACCOUNT_SCOPE],
        "iat": now,
        "exp": now + expires_in,
    }

    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
    )
