"""Tagged results returned by the lifecycle and session operations.

Expected failures (unknown token, expired token, duplicate email, ...) are
values, not exceptions. Callers branch on ``isinstance(result, Err)`` and
then on ``result.kind``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    DUPLICATE_ACCOUNT = "duplicate_account"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    ALREADY_REDEEMED = "already_redeemed"
    ACCOUNT_NOT_ACTIVE = "account_not_active"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_TRANSITION = "invalid_transition"
    CONFLICT = "conflict"


DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.DUPLICATE_ACCOUNT: "An account with this email already exists or has been invited.",
    ErrorKind.INVALID_TOKEN: "The token is invalid or has already been used.",
    ErrorKind.TOKEN_EXPIRED: "The token has expired. Please request a new one.",
    ErrorKind.ALREADY_REDEEMED: "This invitation has already been used.",
    ErrorKind.ACCOUNT_NOT_ACTIVE: "Account is not active. Please contact your administrator.",
    ErrorKind.INVALID_CREDENTIALS: "Invalid email or password.",
    ErrorKind.ACCOUNT_NOT_FOUND: "Account not found.",
    ErrorKind.INVALID_TRANSITION: "The requested status change is not allowed.",
    ErrorKind.CONFLICT: "The account was modified concurrently. Please refresh and try again.",
}


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Err:
    kind: ErrorKind
    message: str

    @classmethod
    def of(cls, kind: ErrorKind) -> "Err":
        """Build an error carrying the stable user-facing message for ``kind``."""
        return cls(kind=kind, message=DEFAULT_MESSAGES[kind])


Result = Union[Ok[T], Err]
