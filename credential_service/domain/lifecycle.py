"""Account lifecycle orchestrating invitations, password resets and status changes.

States are PENDING, ACTIVE and SUSPENDED. An account is created PENDING by an
administrator invite, becomes ACTIVE exactly once when its invite token is
redeemed, and only moves between ACTIVE and SUSPENDED afterwards. Every
read-check-write goes through ``AccountRepository.save``, which only succeeds
while the stored version is unchanged, so two redemptions of one token cannot
both win.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import urlencode

from .account import Account, AccountStatus, Role, normalize_email
from .audit import AuditTrail
from .contracts import AccountChanges, Principal
from .results import Err, ErrorKind, Ok, Result
from ..notifications import INVITATION, PASSWORD_RESET, Notifier
from ..repository import AccountRepository, DuplicateEmailError, StaleWriteError
from ..security.passwords import PasswordHasher
from ..security.tokens import hash_token, issue_token

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If an account exists with this email, a password reset link has been sent."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def describe_ttl(ttl: timedelta) -> str:
    """Render a TTL the way it is quoted in notification emails."""
    seconds = int(ttl.total_seconds())
    if seconds > 86400 and seconds % 86400 == 0:
        days = seconds // 86400
        return f"{days} day{'s' if days != 1 else ''}"
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours != 1 else ''}"
    minutes = max(1, seconds // 60)
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class AccountLifecycle:
    """State transitions of an account and the single-use tokens that drive them."""

    def __init__(
        self,
        repository: AccountRepository,
        hasher: PasswordHasher,
        notifier: Notifier,
        *,
        audit: AuditTrail | None = None,
        invite_ttl: timedelta = timedelta(days=7),
        reset_ttl: timedelta = timedelta(hours=24),
        link_base: str = "http://localhost:4200",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._hasher = hasher
        self._notifier = notifier
        self._audit = audit or AuditTrail(repository)
        self._invite_ttl = invite_ttl
        self._reset_ttl = reset_ttl
        self._link_base = link_base.rstrip("/")
        self._clock = clock

    def invite(self, email: str, role: Role, invited_by: Principal) -> Result[Account]:
        """Create a PENDING account and mail its invite link.

        The ``exists_by_email`` check is advisory; the store's unique
        constraint decides when two invites for one address race.
        """
        email = normalize_email(email)
        if self._repository.exists_by_email(email):
            logger.info("invite for %s rejected: account already exists", email)
            return Err.of(ErrorKind.DUPLICATE_ACCOUNT)

        now = self._clock()
        issued = issue_token(self._invite_ttl, now)
        account = Account(
            account_id=str(uuid.uuid4()),
            email=email,
            role=role,
            status=AccountStatus.PENDING,
            created_at=now,
            updated_at=now,
            invite_token_hash=issued.token_hash,
            invite_token_expires_at=issued.expires_at,
            invited_by=invited_by.display_name,
        )
        try:
            account = self._repository.create_account(account)
        except DuplicateEmailError:
            logger.info("invite for %s lost the race to a concurrent invite", email)
            return Err.of(ErrorKind.DUPLICATE_ACCOUNT)

        self._audit.record(
            "account.invited",
            account_id=account.account_id,
            actor=invited_by.account_id,
            metadata={"role": role.value},
        )
        self._notify(
            email,
            INVITATION,
            {
                "link": self._link("accept-invite", issued.token),
                "invited_by": invited_by.display_name,
                "expires_in": describe_ttl(self._invite_ttl),
            },
        )
        logger.info("account %s invited as %s by %s", account.account_id, role.value, invited_by.account_id)
        return Ok(account)

    def resend_invite(self, account_id: str, actor: Principal) -> Result[Account]:
        """Replace the outstanding invite token of a PENDING account and mail it again."""
        account = self._repository.find_by_id(account_id)
        if account is None:
            return Err.of(ErrorKind.ACCOUNT_NOT_FOUND)
        if account.status is not AccountStatus.PENDING:
            return Err.of(ErrorKind.ALREADY_REDEEMED)

        now = self._clock()
        issued = issue_token(self._invite_ttl, now)
        account.invite_token_hash = issued.token_hash
        account.invite_token_expires_at = issued.expires_at
        account.updated_at = now
        try:
            account = self._repository.save(account)
        except StaleWriteError:
            return Err.of(ErrorKind.CONFLICT)

        self._audit.record("account.invite_resent", account_id=account.account_id, actor=actor.account_id)
        self._notify(
            account.email,
            INVITATION,
            {
                "link": self._link("accept-invite", issued.token),
                "invited_by": account.invited_by or actor.display_name,
                "expires_in": describe_ttl(self._invite_ttl),
            },
        )
        return Ok(account)

    def redeem_invite(self, token: str, first_name: str, last_name: str, password: str) -> Result[Account]:
        """Activate the PENDING account holding ``token`` with the chosen password."""
        account = self._repository.find_by_invite_token(hash_token(token))
        if account is None:
            return Err.of(ErrorKind.INVALID_TOKEN)
        now = self._clock()
        if account.invite_token_expires_at is None or account.invite_token_expires_at < now:
            return Err.of(ErrorKind.TOKEN_EXPIRED)
        if account.status is not AccountStatus.PENDING:
            return Err.of(ErrorKind.ALREADY_REDEEMED)

        account.first_name = first_name
        account.last_name = last_name
        account.password_hash = self._hasher.hash(password)
        account.status = AccountStatus.ACTIVE
        account.clear_invite()
        account.updated_at = now
        try:
            account = self._repository.save(account)
        except StaleWriteError:
            logger.warning("concurrent redemption of invite for account %s refused", account.account_id)
            return Err.of(ErrorKind.ALREADY_REDEEMED)

        self._audit.record("account.activated", account_id=account.account_id, actor=account.account_id)
        logger.info("account %s activated", account.account_id)
        return Ok(account)

    def request_password_reset(self, email: str) -> Result[str]:
        """Mail a reset link to ACTIVE accounts; the reply is identical for every address."""
        account = self._repository.find_by_email(normalize_email(email))
        if account is not None and account.status is AccountStatus.ACTIVE:
            self._issue_reset(account)
        return Ok(RESET_REQUESTED_MESSAGE)

    def _issue_reset(self, account: Account) -> None:
        now = self._clock()
        issued = issue_token(self._reset_ttl, now)
        account.reset_token_hash = issued.token_hash
        account.reset_token_expires_at = issued.expires_at
        account.updated_at = now
        try:
            account = self._repository.save(account)
        except StaleWriteError:
            logger.warning("reset token for account %s not stored: concurrent update", account.account_id)
            return

        self._audit.record("password_reset.requested", account_id=account.account_id, actor=None)
        self._notify(
            account.email,
            PASSWORD_RESET,
            {
                "link": self._link("reset-password", issued.token),
                "expires_in": describe_ttl(self._reset_ttl),
            },
        )

    def reset_password(self, token: str, new_password: str) -> Result[Account]:
        """Replace the password of the ACTIVE account holding reset ``token``."""
        account = self._repository.find_by_reset_token(hash_token(token))
        if account is None:
            return Err.of(ErrorKind.INVALID_TOKEN)
        now = self._clock()
        if account.reset_token_expires_at is None or account.reset_token_expires_at < now:
            return Err.of(ErrorKind.TOKEN_EXPIRED)
        if account.status is not AccountStatus.ACTIVE:
            return Err.of(ErrorKind.ACCOUNT_NOT_ACTIVE)

        account.password_hash = self._hasher.hash(new_password)
        account.clear_reset()
        account.updated_at = now
        try:
            account = self._repository.save(account)
        except StaleWriteError:
            logger.warning("concurrent use of reset token for account %s refused", account.account_id)
            return Err.of(ErrorKind.INVALID_TOKEN)

        self._audit.record("password.reset", account_id=account.account_id, actor=account.account_id)
        logger.info("password reset for account %s", account.account_id)
        return Ok(account)

    def set_status(self, account_id: str, new_status: AccountStatus, actor: Principal) -> Result[Account]:
        """Move an account between ACTIVE and SUSPENDED.

        PENDING accounts have no password yet, so entering or leaving PENDING
        here is refused; activation only happens through ``redeem_invite``.
        """
        account = self._repository.find_by_id(account_id)
        if account is None:
            return Err.of(ErrorKind.ACCOUNT_NOT_FOUND)
        previous = account.status
        if previous is new_status:
            return Ok(account)
        if AccountStatus.PENDING in (previous, new_status):
            return Err.of(ErrorKind.INVALID_TRANSITION)

        account.status = new_status
        if new_status is AccountStatus.SUSPENDED:
            account.clear_reset()
        account.updated_at = self._clock()
        try:
            account = self._repository.save(account)
        except StaleWriteError:
            return Err.of(ErrorKind.CONFLICT)

        self._audit.record(
            "account.status_changed",
            account_id=account.account_id,
            actor=actor.account_id,
            metadata={"from": previous.value, "to": new_status.value},
        )
        logger.info("account %s moved %s -> %s by %s", account_id, previous.value, new_status.value, actor.account_id)
        return Ok(account)

    def update_account(self, account_id: str, changes: AccountChanges, actor: Principal) -> Result[Account]:
        """Apply administrator edits to names, email and role."""
        account = self._repository.find_by_id(account_id)
        if account is None:
            return Err.of(ErrorKind.ACCOUNT_NOT_FOUND)

        changed: list[str] = []
        if changes.email is not None:
            email = normalize_email(changes.email)
            if email != account.email:
                if self._repository.exists_by_email(email):
                    return Err.of(ErrorKind.DUPLICATE_ACCOUNT)
                account.email = email
                changed.append("email")
        if changes.first_name is not None and changes.first_name != account.first_name:
            account.first_name = changes.first_name
            changed.append("first_name")
        if changes.last_name is not None and changes.last_name != account.last_name:
            account.last_name = changes.last_name
            changed.append("last_name")
        if changes.role is not None and changes.role is not account.role:
            account.role = changes.role
            changed.append("role")
        if not changed:
            return Ok(account)

        account.updated_at = self._clock()
        try:
            account = self._repository.save(account)
        except DuplicateEmailError:
            return Err.of(ErrorKind.DUPLICATE_ACCOUNT)
        except StaleWriteError:
            return Err.of(ErrorKind.CONFLICT)

        self._audit.record(
            "account.updated",
            account_id=account.account_id,
            actor=actor.account_id,
            metadata={"fields": changed},
        )
        return Ok(account)

    def get_account(self, account_id: str) -> Result[Account]:
        account = self._repository.find_by_id(account_id)
        if account is None:
            return Err.of(ErrorKind.ACCOUNT_NOT_FOUND)
        return Ok(account)

    def list_accounts(self, status: AccountStatus | None = None) -> list[Account]:
        return self._repository.list_accounts(status=status)

    def _link(self, path: str, token: str) -> str:
        return f"{self._link_base}/{path}?{urlencode({'token': token})}"

    def _notify(self, to_address: str, template_kind: str, params: dict[str, Any]) -> None:
        try:
            self._notifier.send(to_address, template_kind, params)
        except Exception:
            logger.exception("%s notification to %s failed; the token remains valid", template_kind, to_address)
