"""
Password hashing
================

Argon2id hashing via argon2-cffi with verification support for legacy
bcrypt hashes carried over from the previous credential store.

- memory cost >= 64 MiB, time cost >= 3, parallelism >= 1
- verification never raises on mismatch and never logs the plaintext
- ``needs_rehash`` flags legacy and outdated hashes for in-place upgrade
"""

from __future__ import annotations

import logging
from typing import Final

import bcrypt
from argon2 import PasswordHasher as Argon2PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

logger = logging.getLogger(__name__)

MIN_MEMORY_COST: Final[int] = 65536  # KiB
MIN_TIME_COST: Final[int] = 3
MIN_PARALLELISM: Final[int] = 1

LEGACY_BCRYPT_PREFIXES: Final[tuple[str, ...]] = ("$2a$", "$2b$", "$2y$")


class PasswordHasher:
    """
    Argon2id password hasher with bcrypt read compatibility.

    Usage:
        hasher = PasswordHasher()
        stored = hasher.hash("user_password")
        hasher.verify("user_password", stored)  # True
    """

    __slots__ = ("_argon2", "_dummy_hash")

    def __init__(
        self,
        memory_cost: int = MIN_MEMORY_COST,
        time_cost: int = MIN_TIME_COST,
        parallelism: int = MIN_PARALLELISM,
    ) -> None:
        if memory_cost < MIN_MEMORY_COST:
            raise ValueError(f"memory_cost must be at least {MIN_MEMORY_COST} KiB (64 MiB)")
        if time_cost < MIN_TIME_COST:
            raise ValueError(f"time_cost must be at least {MIN_TIME_COST}")
        if parallelism < MIN_PARALLELISM:
            raise ValueError(f"parallelism must be at least {MIN_PARALLELISM}")

        self._argon2 = Argon2PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )
        self._dummy_hash = self._argon2.hash("dummy-password-for-timing")

    def hash(self, password: str) -> str:
        """Return the encoded Argon2id hash for ``password``."""
        if not password:
            raise ValueError("Password cannot be empty")
        return self._argon2.hash(password)

    def verify(self, password: str, stored: str | None) -> bool:
        """Check ``password`` against an Argon2 or legacy bcrypt hash."""
        if not stored:
            return False
        if stored.startswith(LEGACY_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
            except ValueError:
                logger.warning("legacy bcrypt verification rejected the input")
                return False
        try:
            return self._argon2.verify(stored, password)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError):
            logger.warning("stored password hash could not be verified")
            return False

    def dummy_verify(self, password: str) -> None:
        """Spend one verification so unknown accounts cost the same as wrong passwords."""
        self.verify(password, self._dummy_hash)

    def needs_rehash(self, stored: str) -> bool:
        """Return ``True`` for bcrypt hashes and Argon2 hashes with outdated parameters."""
        if stored.startswith(LEGACY_BCRYPT_PREFIXES):
            return True
        try:
            return self._argon2.check_needs_rehash(stored)
        except InvalidHashError:
            return True
