"""Utilities for issuing single-use tokens and signed session JWTs."""

from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from ..config import get_settings

ACCESS_KIND = "access"
REFRESH_KIND = "refresh"


class InvalidSessionToken(Exception):
    """Raised when a session JWT fails signature, issuer, expiry or kind checks."""


@dataclass(frozen=True, slots=True)
class IssuedToken:
    """A freshly minted single-use token, its storage digest and expiry."""

    token: str
    token_hash: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"IssuedToken(expires_at={self.expires_at.isoformat()})"


def issue_token(ttl: timedelta, now: datetime | None = None) -> IssuedToken:
    """Generate an unguessable token (256 bits) that expires after ``ttl``."""
    token = secrets.token_urlsafe(32)
    issued_at = now or datetime.now(timezone.utc)
    return IssuedToken(token=token, token_hash=hash_token(token), expires_at=issued_at + ttl)


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest under which a token is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_session_token(*, subject: str, kind: str, role: str, ttl_seconds: int) -> str:
    """Create a signed JWT for an account.

    Parameters
    ----------
    subject:
        Account identifier to embed in the token `sub` claim.
    kind:
        Either ``access`` or ``refresh``; checked again on decode.
    role:
        Authorization tier of the account at issue time.
    ttl_seconds:
        Lifetime of the token.
    """

    settings = get_settings()
    now = int(time.time())
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "kind": kind,
        "role": role,
        "iat": now,
        "exp": now + ttl_seconds,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_session_token(token: str, expected_kind: str) -> dict[str, Any]:
    """Decode and verify a session JWT returning its payload.

    Raises
    ------
    InvalidSessionToken
        When the token is malformed, expired, signed by another issuer or of
        another kind than ``expected_kind``.
    """

    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "sub", "iss"]},
        )
    except jwt.PyJWTError as exc:
        raise InvalidSessionToken(type(exc).__name__) from exc
    if claims.get("kind") != expected_kind:
        raise InvalidSessionToken("unexpected token kind")
    return claims
