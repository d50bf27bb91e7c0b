"""Database repository for account credentials and the identity audit log."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Tuple

from psycopg import errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, AccountStatus, Role, normalize_email


class StaleWriteError(Exception):
    """Raised when a conditional save finds the account version already advanced."""


class DuplicateEmailError(Exception):
    """Raised when the email unique constraint rejects an insert or update."""


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    email_hash BYTEA NOT NULL,
    email TEXT NOT NULL,
    role TEXT NOT NULL,
    status TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    password_hash TEXT,
    invite_token_hash TEXT,
    invite_token_expires_at TIMESTAMPTZ,
    reset_token_hash TEXT,
    reset_token_expires_at TIMESTAMPTZ,
    invited_by TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT accounts_invite_pair CHECK ((invite_token_hash IS NULL) = (invite_token_expires_at IS NULL)),
    CONSTRAINT accounts_reset_pair CHECK ((reset_token_hash IS NULL) = (reset_token_expires_at IS NULL))
);
CREATE UNIQUE INDEX IF NOT EXISTS accounts_email_hash_key ON accounts (email_hash);
CREATE UNIQUE INDEX IF NOT EXISTS accounts_invite_token_key
    ON accounts (invite_token_hash) WHERE invite_token_hash IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS accounts_reset_token_key
    ON accounts (reset_token_hash) WHERE reset_token_hash IS NOT NULL;

CREATE TABLE IF NOT EXISTS identity_audit_log (
    audit_id BIGSERIAL PRIMARY KEY,
    account_id TEXT,
    event_type TEXT NOT NULL,
    actor TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS identity_audit_log_account_idx ON identity_audit_log (account_id, created_at DESC);
"""

_ACCOUNT_COLUMNS = """
    account_id, email, role, status, created_at, updated_at, first_name, last_name,
    password_hash, invite_token_hash, invite_token_expires_at, reset_token_hash,
    reset_token_expires_at, invited_by, version
"""


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in identity_audit_log."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AccountRepository:
    """Postgres-backed account persistence with optimistic version checks."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def ensure_schema(self) -> None:
        """Create the account and audit tables when they do not exist yet."""
        with self._pool.connection() as conn:
            conn.execute(SCHEMA_SQL)
            conn.commit()

    def _hash_email(self, email: str) -> bytes:
        """Normalise an email address and return its SHA-256 digest."""
        return hashlib.sha256(normalize_email(email).encode("utf-8")).digest()

    def _find_one(self, where_sql: str, params: tuple) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
                row = cur.fetchone()
        if not row:
            return None
        return self._map_record(row)

    def find_by_id(self, account_id: str) -> Account | None:
        return self._find_one("account_id = %s", (account_id,))

    def find_by_email(self, email: str) -> Account | None:
        return self._find_one("email_hash = %s", (self._hash_email(email),))

    def exists_by_email(self, email: str) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT EXISTS (SELECT 1 FROM accounts WHERE email_hash = %s)",
                    (self._hash_email(email),),
                )
                row = cur.fetchone()
        return bool(row and row[0])

    def find_by_invite_token(self, token_hash: str) -> Account | None:
        return self._find_one("invite_token_hash = %s", (token_hash,))

    def find_by_reset_token(self, token_hash: str) -> Account | None:
        return self._find_one("reset_token_hash = %s", (token_hash,))

    def list_accounts(self, *, status: AccountStatus | None = None) -> list[Account]:
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM accounts"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = %s"
            params.append(status.value)
        query += " ORDER BY created_at, account_id"
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def create_account(self, account: Account) -> Account:
        """Insert a new account; the email unique index is the final arbiter."""
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO accounts (
                            account_id, email_hash, email, role, status, created_at, updated_at,
                            first_name, last_name, password_hash, invite_token_hash,
                            invite_token_expires_at, reset_token_hash, reset_token_expires_at,
                            invited_by, version
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            account.account_id,
                            self._hash_email(account.email),
                            account.email,
                            account.role.value,
                            account.status.value,
                            account.created_at,
                            account.updated_at,
                            account.first_name,
                            account.last_name,
                            account.password_hash,
                            account.invite_token_hash,
                            account.invite_token_expires_at,
                            account.reset_token_hash,
                            account.reset_token_expires_at,
                            account.invited_by,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
        except errors.UniqueViolation as exc:
            raise DuplicateEmailError(account.email) from exc
        return self._map_record(row)

    def save(self, account: Account) -> Account:
        """Write every mutable field if the stored version still matches ``account.version``.

        Returns the stored account with its advanced version. Raises
        ``StaleWriteError`` when another writer got there first.
        """
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        UPDATE accounts
                        SET email_hash = %s, email = %s, role = %s, status = %s,
                            first_name = %s, last_name = %s, password_hash = %s,
                            invite_token_hash = %s, invite_token_expires_at = %s,
                            reset_token_hash = %s, reset_token_expires_at = %s,
                            invited_by = %s, updated_at = %s, version = version + 1
                        WHERE account_id = %s AND version = %s
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            self._hash_email(account.email),
                            account.email,
                            account.role.value,
                            account.status.value,
                            account.first_name,
                            account.last_name,
                            account.password_hash,
                            account.invite_token_hash,
                            account.invite_token_expires_at,
                            account.reset_token_hash,
                            account.reset_token_expires_at,
                            account.invited_by,
                            account.updated_at,
                            account.account_id,
                            account.version,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
        except errors.UniqueViolation as exc:
            raise DuplicateEmailError(account.email) from exc
        if row is None:
            raise StaleWriteError(account.account_id)
        return self._map_record(row)

    def delete(self, account_id: str) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM accounts WHERE account_id = %s", (account_id,))
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            email=row[1],
            role=Role(row[2]),
            status=AccountStatus(row[3]),
            created_at=row[4],
            updated_at=row[5],
            first_name=row[6],
            last_name=row[7],
            password_hash=row[8],
            invite_token_hash=row[9],
            invite_token_expires_at=row[10],
            reset_token_hash=row[11],
            reset_token_expires_at=row[12],
            invited_by=row[13],
            version=row[14],
        )

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing credential workflow activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO identity_audit_log (account_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (account_id, event_type, actor, Json(metadata or {})),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries, newest first, with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, event_type, actor, metadata, created_at
            FROM identity_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                records = [
                    AuditLogRecord(
                        audit_id=row[0],
                        account_id=row[1],
                        event_type=row[2],
                        actor=row[3],
                        metadata=row[4] or {},
                        created_at=row[5],
                    )
                    for row in cur.fetchall()
                ]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
