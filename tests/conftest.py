from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from credential_service.api import routes
from credential_service.api.errors import install_error_handlers
from credential_service.domain.account import Account, AccountStatus, Role, normalize_email
from credential_service.domain.audit import AuditTrail
from credential_service.domain.contracts import Principal
from credential_service.domain.lifecycle import AccountLifecycle
from credential_service.domain.sessions import SessionIssuer
from credential_service.repository import DuplicateEmailError, StaleWriteError
from credential_service.security.passwords import PasswordHasher

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ADMIN_PASSWORD = "Admin#Pass1"


class FakeRepository:
    """In-memory repository mimicking the version-checked Postgres behaviour."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._lock = threading.Lock()
        self.audit_log: list[FakeAuditLogRecord] = []
        self._audit_seq = 0

    def _find(self, predicate) -> Account | None:
        with self._lock:
            for account in self._accounts.values():
                if predicate(account):
                    return replace(account)
        return None

    def find_by_id(self, account_id: str) -> Account | None:
        return self._find(lambda account: account.account_id == account_id)

    def find_by_email(self, email: str) -> Account | None:
        email = normalize_email(email)
        return self._find(lambda account: account.email == email)

    def exists_by_email(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def find_by_invite_token(self, token_hash: str) -> Account | None:
        return self._find(lambda account: account.invite_token_hash == token_hash)

    def find_by_reset_token(self, token_hash: str) -> Account | None:
        return self._find(lambda account: account.reset_token_hash == token_hash)

    def list_accounts(self, *, status: AccountStatus | None = None) -> list[Account]:
        with self._lock:
            accounts = [replace(a) for a in self._accounts.values() if status is None or a.status is status]
        return sorted(accounts, key=lambda a: (a.created_at, a.account_id))

    def create_account(self, account: Account) -> Account:
        with self._lock:
            if any(stored.email == normalize_email(account.email) for stored in self._accounts.values()):
                raise DuplicateEmailError(account.email)
            stored = replace(account, email=normalize_email(account.email), version=0)
            self._accounts[stored.account_id] = stored
            return replace(stored)

    def save(self, account: Account) -> Account:
        with self._lock:
            current = self._accounts.get(account.account_id)
            if current is None or current.version != account.version:
                raise StaleWriteError(account.account_id)
            for other in self._accounts.values():
                if other.account_id != account.account_id and other.email == normalize_email(account.email):
                    raise DuplicateEmailError(account.email)
            stored = replace(account, version=account.version + 1)
            self._accounts[stored.account_id] = stored
            return replace(stored)

    def delete(self, account_id: str) -> bool:
        with self._lock:
            return self._accounts.pop(account_id, None) is not None

    def force_update(self, account_id: str, **fields: Any) -> None:
        """Edit a stored row directly, as a test would with SQL."""
        with self._lock:
            self._accounts[account_id] = replace(self._accounts[account_id], **fields)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        with self._lock:
            self._audit_seq += 1
            self.audit_log.append(
                FakeAuditLogRecord(
                    audit_id=self._audit_seq,
                    account_id=account_id,
                    event_type=event_type,
                    actor=actor,
                    metadata=metadata or {},
                    created_at=datetime.now(timezone.utc),
                )
            )

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = list(self.audit_log)
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def event_types(self, account_id: str | None = None) -> list[str]:
        return [r.event_type for r in self.audit_log if account_id is None or r.account_id == account_id]


@dataclass
class FakeAuditLogRecord:
    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict
    created_at: datetime


@dataclass
class SentMessage:
    to_address: str
    template_kind: str
    params: dict[str, Any]

    @property
    def token(self) -> str:
        return parse_qs(urlparse(self.params["link"]).query)["token"][0]


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[SentMessage] = []

    def send(self, to_address: str, template_kind: str, template_params: dict[str, Any]) -> None:
        self.sent.append(SentMessage(to_address, template_kind, dict(template_params)))

    def last_to(self, address: str) -> SentMessage:
        return [message for message in self.sent if message.to_address == address][-1]


class ExplodingNotifier:
    def send(self, to_address: str, template_kind: str, template_params: dict[str, Any]) -> None:
        raise ConnectionError("smtp relay unreachable")


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(FIXED_NOW)


@pytest.fixture
def lifecycle(repository, hasher, notifier, clock) -> AccountLifecycle:
    return AccountLifecycle(
        repository,
        hasher,
        notifier,
        invite_ttl=timedelta(days=7),
        reset_ttl=timedelta(hours=24),
        link_base="https://recipes.example.com",
        clock=clock,
    )


@pytest.fixture
def sessions(repository, hasher) -> SessionIssuer:
    return SessionIssuer(repository, hasher, access_ttl_seconds=900, refresh_ttl_seconds=3600)


def make_active_account(
    repository: FakeRepository,
    hasher: PasswordHasher,
    *,
    email: str,
    password: str,
    role: Role = Role.STAFF,
    status: AccountStatus = AccountStatus.ACTIVE,
    password_hash: str | None = None,
) -> Account:
    now = datetime.now(timezone.utc)
    return repository.create_account(
        Account(
            account_id=str(uuid.uuid4()),
            email=email,
            role=role,
            status=status,
            created_at=now,
            updated_at=now,
            first_name="Test",
            last_name=role.value.title(),
            password_hash=password_hash or hasher.hash(password),
        )
    )


@pytest.fixture
def admin(repository, hasher) -> Account:
    return make_active_account(
        repository, hasher, email="admin@example.com", password=ADMIN_PASSWORD, role=Role.ADMIN
    )


@pytest.fixture
def admin_principal(admin) -> Principal:
    return Principal.from_account(admin)


@pytest.fixture
def api_client(repository, lifecycle, sessions):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    install_error_handlers(app)
    app.state.lifecycle = lifecycle
    app.state.sessions = sessions
    app.state.audit = AuditTrail(repository)

    original_limiter = routes.rate_limiter
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=3, window_seconds=60)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client

    routes.rate_limiter = original_limiter


@pytest.fixture
def admin_headers(api_client, admin) -> dict[str, str]:
    response = api_client.post("/v1/auth/login", json={"email": admin.email, "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
