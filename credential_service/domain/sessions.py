"""Credential authentication and session token issuance."""

from __future__ import annotations

import logging

from .account import Account, AccountStatus, normalize_email
from .audit import AuditTrail
from .contracts import SessionBundle
from .results import Err, ErrorKind, Ok, Result
from ..repository import AccountRepository, StaleWriteError
from ..security.passwords import PasswordHasher
from ..security.tokens import (
    ACCESS_KIND,
    REFRESH_KIND,
    InvalidSessionToken,
    decode_session_token,
    issue_session_token,
)

logger = logging.getLogger(__name__)


class SessionIssuer:
    """Exchanges credentials or refresh tokens for signed session token pairs."""

    def __init__(
        self,
        repository: AccountRepository,
        hasher: PasswordHasher,
        *,
        audit: AuditTrail | None = None,
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self._repository = repository
        self._hasher = hasher
        self._audit = audit or AuditTrail(repository)
        self._access_ttl = access_ttl_seconds
        self._refresh_ttl = refresh_ttl_seconds

    def login(self, email: str, password: str) -> Result[SessionBundle]:
        """Verify ``email``/``password`` and issue a session pair.

        Unknown emails, accounts without a password and wrong passwords all
        produce the same ``INVALID_CREDENTIALS`` error after one hash
        verification. Account status is only consulted once the password
        matched.
        """
        account = self._repository.find_by_email(normalize_email(email))
        if account is None or account.password_hash is None:
            self._hasher.dummy_verify(password)
            return Err.of(ErrorKind.INVALID_CREDENTIALS)
        if not self._hasher.verify(password, account.password_hash):
            logger.info("failed login for account %s", account.account_id)
            return Err.of(ErrorKind.INVALID_CREDENTIALS)
        if account.status is not AccountStatus.ACTIVE:
            logger.info("login refused for %s account %s", account.status.value, account.account_id)
            return Err.of(ErrorKind.ACCOUNT_NOT_ACTIVE)

        if self._hasher.needs_rehash(account.password_hash):
            account = self._upgrade_hash(account, password)

        bundle = self._issue(account)
        self._audit.record("session.issued", account_id=account.account_id, actor=account.account_id)
        return Ok(bundle)

    def refresh(self, refresh_token: str) -> Result[SessionBundle]:
        """Rotate a valid refresh token into a new session pair."""
        try:
            claims = decode_session_token(refresh_token, REFRESH_KIND)
        except InvalidSessionToken as exc:
            logger.info("refresh token rejected: %s", exc)
            return Err.of(ErrorKind.INVALID_TOKEN)

        account = self._repository.find_by_id(claims["sub"])
        if account is None or account.status is not AccountStatus.ACTIVE:
            return Err.of(ErrorKind.INVALID_TOKEN)

        bundle = self._issue(account)
        self._audit.record(
            "session.refreshed",
            account_id=account.account_id,
            actor=account.account_id,
            metadata={"previous_jti": claims.get("jti")},
        )
        return Ok(bundle)

    def authenticate(self, access_token: str) -> Result[Account]:
        """Resolve the ACTIVE account an access token was issued to."""
        try:
            claims = decode_session_token(access_token, ACCESS_KIND)
        except InvalidSessionToken:
            return Err.of(ErrorKind.INVALID_TOKEN)
        account = self._repository.find_by_id(claims["sub"])
        if account is None or account.status is not AccountStatus.ACTIVE:
            return Err.of(ErrorKind.INVALID_TOKEN)
        return Ok(account)

    def _issue(self, account: Account) -> SessionBundle:
        access_token = issue_session_token(
            subject=account.account_id,
            kind=ACCESS_KIND,
            role=account.role.value,
            ttl_seconds=self._access_ttl,
        )
        refresh_token = issue_session_token(
            subject=account.account_id,
            kind=REFRESH_KIND,
            role=account.role.value,
            ttl_seconds=self._refresh_ttl,
        )
        return SessionBundle(
            access_token=access_token,
            access_expires_in=self._access_ttl,
            refresh_token=refresh_token,
            refresh_expires_in=self._refresh_ttl,
            account=account,
        )

    def _upgrade_hash(self, account: Account, password: str) -> Account:
        account.password_hash = self._hasher.hash(password)
        try:
            account = self._repository.save(account)
        except StaleWriteError:
            logger.warning("password hash upgrade for account %s skipped: concurrent update", account.account_id)
            return account
        self._audit.record("password.rehashed", account_id=account.account_id, actor=None)
        return account
