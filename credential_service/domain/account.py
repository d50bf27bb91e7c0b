from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    STAFF = "STAFF"


class AccountStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


@dataclass(slots=True)
class Account:
    """Flat account record; token fields hold SHA-256 digests, never raw tokens."""

    account_id: str
    email: str
    role: Role
    status: AccountStatus
    created_at: datetime
    updated_at: datetime
    first_name: str | None = None
    last_name: str | None = None
    password_hash: str | None = None
    invite_token_hash: str | None = None
    invite_token_expires_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_token_expires_at: datetime | None = None
    invited_by: str | None = None
    version: int = 0

    @property
    def full_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else self.email

    def clear_invite(self) -> None:
        self.invite_token_hash = None
        self.invite_token_expires_at = None

    def clear_reset(self) -> None:
        self.reset_token_hash = None
        self.reset_token_expires_at = None

    def __repr__(self) -> str:
        return (
            f"Account(account_id={self.account_id!r}, email={self.email!r}, "
            f"role={self.role.value}, status={self.status.value}, version={self.version})"
        )


def normalize_email(email: str) -> str:
    """Canonical form used for storage and case-insensitive uniqueness."""
    return email.strip().lower()
