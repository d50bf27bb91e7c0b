"""HTTP route definitions for the credential service."""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from prometheus_client import Counter
from pydantic import BaseModel, EmailStr, Field, field_validator

from .errors import error_response, unwrap
from ..config import get_settings
from ..domain.account import Account, AccountStatus, Role
from ..domain.audit import AuditTrail
from ..domain.contracts import AccountChanges, Principal, SessionBundle
from ..domain.lifecycle import AccountLifecycle
from ..domain.results import Err
from ..domain.sessions import SessionIssuer
from ..security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

LOGIN_OUTCOMES = Counter(
    "credential_login_attempts_total",
    "Login attempts by outcome",
    ["outcome"],
)

PASSWORD_SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
_PASSWORD_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
    (re.compile(f"[{re.escape(PASSWORD_SPECIAL_CHARACTERS)}]"), "Password must contain at least one special character"),
]


def check_password_policy(value: str) -> str:
    """Enforce the password rules shown to users in the client."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(value):
            raise ValueError(message)
    return value


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` record, without credentials."""

    account_id: str
    email: EmailStr
    first_name: str | None
    last_name: str | None
    role: Role
    status: AccountStatus
    invited_by: str | None
    created_at: str

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain record."""
        return cls(
            account_id=account.account_id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role,
            status=account.status,
            invited_by=account.invited_by,
            created_at=account.created_at.isoformat(),
        )


class InviteRequest(BaseModel):
    email: EmailStr
    role: Role = Role.STAFF


class AcceptInviteRequest(BaseModel):
    token: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    password: str

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_policy(value)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshTokenRequest(BaseModel):
    """Request body for exchanging refresh tokens for new session credentials."""

    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_policy(value)


class UpdateAccountRequest(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    role: Role | None = None


class StatusChangeRequest(BaseModel):
    status: AccountStatus


class MessageResponse(BaseModel):
    message: str


class TokenResponse(BaseModel):
    """Session issuance response containing the bearer token pair and the account."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    account: AccountResponse

    @classmethod
    def from_bundle(cls, bundle: SessionBundle) -> "TokenResponse":
        return cls(
            access_token=bundle.access_token,
            expires_in=bundle.access_expires_in,
            refresh_token=bundle.refresh_token,
            refresh_expires_in=bundle.refresh_expires_in,
            account=AccountResponse.from_domain(bundle.account),
        )


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()


def _build_rate_limiter() -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def _rate_key(scope: str, identifier: str) -> str:
    digest = hashlib.sha256(identifier.strip().lower().encode("utf-8")).hexdigest()[:12]
    return f"{scope}:{digest}"


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise error_response(status.HTTP_429_TOO_MANY_REQUESTS, "rate_limited", "rate limited")


def get_lifecycle(request: Request) -> AccountLifecycle:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    return lifecycle


def get_sessions(request: Request) -> SessionIssuer:
    sessions: SessionIssuer = request.app.state.sessions
    return sessions


def get_audit(request: Request) -> AuditTrail:
    audit: AuditTrail = request.app.state.audit
    return audit


def get_principal(
    authorization: str | None = Header(default=None, alias="Authorization"),
    sessions: SessionIssuer = Depends(get_sessions),
) -> Principal:
    """Resolve the bearer access token into the caller's identity."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"kind": "unauthorized", "message": "authentication required"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    result = sessions.authenticate(token.strip())
    if isinstance(result, Err):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"kind": "unauthorized", "message": "invalid or expired access token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Principal.from_account(result.value)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise error_response(status.HTTP_403_FORBIDDEN, "forbidden", "Access denied")
    return principal


@router.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, sessions: SessionIssuer = Depends(get_sessions)) -> TokenResponse:
    """Exchange email and password for a session token pair."""
    rate_key = _rate_key("login", payload.email)
    _enforce_rate_limit(rate_key)
    result = sessions.login(payload.email, payload.password)
    LOGIN_OUTCOMES.labels(outcome="success" if not isinstance(result, Err) else result.kind.value).inc()
    bundle = unwrap(result)
    rate_limiter.reset(rate_key)
    return TokenResponse.from_bundle(bundle)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh_token(payload: RefreshTokenRequest, sessions: SessionIssuer = Depends(get_sessions)) -> TokenResponse:
    _enforce_rate_limit(_rate_key("token-refresh", payload.refresh_token))
    return TokenResponse.from_bundle(unwrap(sessions.refresh(payload.refresh_token)))


@router.post("/auth/accept-invite", response_model=MessageResponse)
def accept_invite(
    payload: AcceptInviteRequest,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> MessageResponse:
    unwrap(lifecycle.redeem_invite(payload.token, payload.first_name, payload.last_name, payload.password))
    return MessageResponse(message="Account activated successfully. You can now log in.")


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    payload: ForgotPasswordRequest,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> MessageResponse:
    """Start a password reset; the response never reveals whether the email exists."""
    _enforce_rate_limit(_rate_key("forgot-password", payload.email))
    return MessageResponse(message=unwrap(lifecycle.request_password_reset(payload.email)))


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    payload: ResetPasswordRequest,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> MessageResponse:
    unwrap(lifecycle.reset_password(payload.token, payload.new_password))
    return MessageResponse(message="Password reset successfully. You can now log in with your new password.")


@router.post("/admin/invitations", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def invite_account(
    payload: InviteRequest,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> AccountResponse:
    """Create a pending account and send its invitation email."""
    return AccountResponse.from_domain(unwrap(lifecycle.invite(payload.email, payload.role, principal)))


@router.post(
    "/admin/accounts/{account_id}/invitation",
    response_model=AccountResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def resend_invitation(
    account_id: str,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> AccountResponse:
    return AccountResponse.from_domain(unwrap(lifecycle.resend_invite(account_id, principal)))


@router.get("/admin/accounts", response_model=list[AccountResponse])
def list_accounts(
    account_status: AccountStatus | None = Query(default=None, alias="status"),
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> list[AccountResponse]:
    return [AccountResponse.from_domain(account) for account in lifecycle.list_accounts(account_status)]


@router.patch("/admin/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    payload: UpdateAccountRequest,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> AccountResponse:
    changes = AccountChanges(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        role=payload.role,
    )
    return AccountResponse.from_domain(unwrap(lifecycle.update_account(account_id, changes, principal)))


@router.put("/admin/accounts/{account_id}/status", response_model=AccountResponse)
def change_status(
    account_id: str,
    payload: StatusChangeRequest,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> AccountResponse:
    return AccountResponse.from_domain(unwrap(lifecycle.set_status(account_id, payload.status, principal)))


@router.get("/accounts/me", response_model=AccountResponse)
def get_own_account(
    principal: Principal = Depends(get_principal),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> AccountResponse:
    return AccountResponse.from_domain(unwrap(lifecycle.get_account(principal.account_id)))


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    principal: Principal = Depends(get_principal),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> AccountResponse:
    """Retrieve an account; non-admins may only read their own."""
    if account_id != principal.account_id and not principal.is_admin:
        raise error_response(status.HTTP_403_FORBIDDEN, "forbidden", "You can only access your own profile")
    return AccountResponse.from_domain(unwrap(lifecycle.get_account(account_id)))


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    principal: Principal = Depends(require_admin),
    audit: AuditTrail = Depends(get_audit),
) -> AuditLogResponse:
    """Return paginated audit events with optional filtering."""
    try:
        records, next_cursor = audit.list_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise error_response(status.HTTP_400_BAD_REQUEST, "invalid_cursor", str(exc)) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)
