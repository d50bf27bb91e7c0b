"""Append-only audit trail for credential lifecycle events."""

from __future__ import annotations

import json
import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime
from typing import Any, Optional, Tuple

from ..repository import AccountRepository, AuditLogRecord

logger = logging.getLogger(__name__)


class AuditTrail:
    """Writes and pages through ``identity_audit_log`` entries."""

    def __init__(self, repository: AccountRepository) -> None:
        self._repository = repository

    def record(
        self,
        event_type: str,
        *,
        account_id: str | None,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._repository.write_audit_event(
            account_id=account_id,
            event_type=event_type,
            actor=actor,
            metadata=metadata or {},
        )
        logger.debug("audit event %s recorded for account %s", event_type, account_id)

    def list_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit records with optional filters and opaque cursor pagination.

        Raises ``ValueError`` when ``cursor`` was not produced by this method.
        """
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._repository.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        return records, self._encode_cursor(next_cursor_tuple)

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            return datetime.fromisoformat(data["created_at"]), int(data["audit_id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("invalid cursor") from exc
