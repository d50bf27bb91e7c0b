"""FastAPI application wiring for the credential service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.errors import install_error_handlers
from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.audit import AuditTrail
from .domain.lifecycle import AccountLifecycle
from .domain.sessions import SessionIssuer
from .notifications import BackgroundNotifier, LoggingNotifier, Notifier, SendGridNotifier
from .repository import AccountRepository
from .security.passwords import PasswordHasher
from .seed import seed_default_accounts, seeds_from_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def _build_notifier(settings: Settings) -> Notifier:
    if settings.sendgrid_api_key:
        logger.info("notifications delivered through sendgrid as %s", settings.mail_from)
        return SendGridNotifier(settings.sendgrid_api_key, settings.mail_from)
    logger.warning("SENDGRID_API_KEY not set; notification links are only logged")
    return LoggingNotifier()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, notifier, services) for the app lifecycle."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    repository = AccountRepository(pool)
    repository.ensure_schema()

    hasher = PasswordHasher(
        memory_cost=settings.argon2_memory_cost,
        time_cost=settings.argon2_time_cost,
        parallelism=settings.argon2_parallelism,
    )
    notifier = BackgroundNotifier(_build_notifier(settings), max_workers=settings.notifier_workers)
    audit = AuditTrail(repository)

    seed_default_accounts(repository, hasher, seeds_from_settings(settings))

    app.state.pool = pool
    app.state.audit = audit
    app.state.lifecycle = AccountLifecycle(
        repository,
        hasher,
        notifier,
        audit=audit,
        invite_ttl=timedelta(seconds=settings.invite_ttl_seconds),
        reset_ttl=timedelta(seconds=settings.reset_ttl_seconds),
        link_base=settings.frontend_url,
    )
    app.state.sessions = SessionIssuer(
        repository,
        hasher,
        audit=audit,
        access_ttl_seconds=settings.jwt_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_ttl_seconds,
    )
    try:
        yield
    finally:
        notifier.shutdown()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)
install_error_handlers(app)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
