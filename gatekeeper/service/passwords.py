from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeeper.logging import get_logger
from gatekeeper.service.errors import ValidationError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


def password_problems(password: str) -> list[str]:
    """Return the human readable reasons ``password`` is too weak (empty when fine)."""
    problems: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not _LOWER.search(password):
        problems.append("must contain at least one lowercase letter")
    if not _UPPER.search(password):
        problems.append("must contain at least one uppercase letter")
    if not _DIGIT.search(password):
        problems.append("must contain at least one number")
    return problems


def ensure_password_strength(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationError(
            "Password does not meet requirements",
            detail={"field": "password", "problems": problems},
        )


class PasswordService:
    """argon2id hashing with a constant-shape verify for unknown accounts."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def burn(self, password: str) -> None:
        """Spend one verification worth of work so unknown emails answer as slowly as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("unused-dummy-password")
        self.verify(self._dummy_hash, password)
