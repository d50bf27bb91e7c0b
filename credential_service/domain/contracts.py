"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass

from .account import Account, Role


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller identity, passed explicitly into each operation."""

    account_id: str
    role: Role
    display_name: str

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @classmethod
    def from_account(cls, account: Account) -> "Principal":
        return cls(account_id=account.account_id, role=account.role, display_name=account.full_name)


@dataclass(slots=True)
class AccountChanges:
    """Administrator edits applied by ``AccountLifecycle.update_account``."""

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    role: Role | None = None


@dataclass(slots=True)
class SessionBundle:
    """Encapsulates the access/refresh token pair returned to API consumers."""

    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int
    account: Account
