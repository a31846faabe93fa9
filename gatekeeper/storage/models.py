from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(IntEnum):
    """Identity roles, ordered so that a higher value grants more."""

    VIEWER = 1
    MANAGER = 2
    ADMIN = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: "Role | str | int") -> "Role":
        if isinstance(value, Role):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown role: {value!r}") from None


def satisfies(actual: Role | str, required: Role | str) -> bool:
    """Return True when ``actual`` is at least as privileged as ``required``."""
    return Role.parse(actual) >= Role.parse(required)


@dataclass
class Identity:
    id: str
    email: str
    password_hash: str
    name: str = ""
    role: Role = Role.VIEWER
    is_active: bool = True
    session_version: int = 0
    password_changed_at: datetime = field(default_factory=_utcnow)
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    lock_until: Optional[datetime] = None
    otp_code_hash: Optional[str] = None
    otp_expires: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None
    revision: int = 0

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        role: Role = Role.VIEWER,
        is_active: bool = True,
        now: Optional[datetime] = None,
    ) -> "Identity":
        now = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
            role=role,
            is_active=is_active,
            password_changed_at=now,
            created_at=now,
        )

    @property
    def has_pending_otp(self) -> bool:
        return self.otp_code_hash is not None and self.otp_expires is not None


# Fields only the lifecycle services may change through compare_and_swap_update
MUTABLE_IDENTITY_FIELDS = frozenset(
    {
        "email",
        "name",
        "password_hash",
        "role",
        "is_active",
        "session_version",
        "password_changed_at",
        "failed_login_attempts",
        "last_failed_login_at",
        "lock_until",
        "otp_code_hash",
        "otp_expires",
        "last_login_at",
    }
)


class AuditAction(str, Enum):
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET = "password_reset"
    USER_CREATE = "user_create"
    USER_ACTIVATE = "user_activate"
    USER_DEACTIVATE = "user_deactivate"
    PROFILE_UPDATE = "profile_update"


@dataclass
class AuditEvent:
    id: str
    action: AuditAction
    identity_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        action: AuditAction,
        *,
        identity_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Dict | None = None,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            identity_id=identity_id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )


@dataclass
class RateBucket:
    """Fixed-window counter state; ``reset_at`` is epoch milliseconds."""

    count: int
    reset_at: int
    allowed: bool = True
