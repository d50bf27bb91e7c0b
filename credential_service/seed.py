"""Startup seeding of default administrator accounts."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import Settings
from .domain.account import Account, AccountStatus, Role, normalize_email
from .domain.audit import AuditTrail
from .repository import AccountRepository, DuplicateEmailError, StaleWriteError
from .security.passwords import PasswordHasher

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SeedAccount:
    email: str
    password: str
    role: Role
    first_name: str
    last_name: str

    def __repr__(self) -> str:
        return f"SeedAccount(email={self.email!r}, role={self.role.value})"


def seeds_from_settings(settings: Settings) -> list[SeedAccount]:
    """Collect the default accounts configured through ``SEED_*`` variables."""
    seeds: list[SeedAccount] = []
    if settings.seed_admin_email and settings.seed_admin_password:
        seeds.append(
            SeedAccount(
                email=settings.seed_admin_email,
                password=settings.seed_admin_password,
                role=Role.ADMIN,
                first_name="System",
                last_name="Administrator",
            )
        )
    if settings.seed_manager_email and settings.seed_manager_password:
        seeds.append(
            SeedAccount(
                email=settings.seed_manager_email,
                password=settings.seed_manager_password,
                role=Role.MANAGER,
                first_name="Production",
                last_name="Manager",
            )
        )
    return seeds


def seed_default_accounts(
    repository: AccountRepository,
    hasher: PasswordHasher,
    seeds: list[SeedAccount],
) -> list[str]:
    """Create missing seed accounts and upgrade legacy hashes of existing ones.

    Returns the emails of accounts that were created or re-hashed.
    """
    audit = AuditTrail(repository)
    touched: list[str] = []
    for seed in seeds:
        email = normalize_email(seed.email)
        existing = repository.find_by_email(email)
        if existing is None:
            now = datetime.now(timezone.utc)
            account = Account(
                account_id=str(uuid.uuid4()),
                email=email,
                role=seed.role,
                status=AccountStatus.ACTIVE,
                created_at=now,
                updated_at=now,
                first_name=seed.first_name,
                last_name=seed.last_name,
                password_hash=hasher.hash(seed.password),
            )
            try:
                account = repository.create_account(account)
            except DuplicateEmailError:
                logger.info("seed account %s created concurrently by another worker", email)
                continue
            audit.record("account.seeded", account_id=account.account_id, actor=None, metadata={"role": seed.role.value})
            logger.info("seed %s account %s created", seed.role.value, email)
            touched.append(email)
            continue

        stored = existing.password_hash
        if stored and hasher.needs_rehash(stored) and hasher.verify(seed.password, stored):
            existing.password_hash = hasher.hash(seed.password)
            existing.updated_at = datetime.now(timezone.utc)
            try:
                existing = repository.save(existing)
            except StaleWriteError:
                logger.warning("seed account %s changed during re-hash; leaving it as is", email)
                continue
            audit.record("password.rehashed", account_id=existing.account_id, actor=None)
            logger.info("seed account %s re-hashed with argon2id", email)
            touched.append(email)
        else:
            logger.info("seed account %s already exists", email)
    return touched
