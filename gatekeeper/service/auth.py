from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger, redact_email
from gatekeeper.service.audit import AuditSink
from gatekeeper.service.errors import (
    AccountLockedError,
    AuthFailure,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from gatekeeper.service.lockout import LockoutTracker, clear_on_success, is_locked
from gatekeeper.service.passwords import PasswordService, ensure_password_strength
from gatekeeper.service.repository import IdentityRepository, apply_transition
from gatekeeper.service.session_guard import AuthenticatedContext, SessionGuard
from gatekeeper.service.tokens import Clock, TokenKind, TokenPair, TokenService, utc_now
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import AuditAction, Identity, Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    identity: Identity
    tokens: TokenPair


@dataclass(frozen=True)
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuthService:
    """Login, refresh, logout, password change and registration.

    Throttling happens before any of these methods are reached; everything
    here assumes the caller already passed the rate limiter.
    """

    def __init__(
        self,
        repo: IdentityRepository,
        tokens: TokenService,
        sessions: SessionGuard,
        lockout: LockoutTracker,
        passwords: PasswordService,
        audit: AuditSink,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repo = repo
        self.tokens = tokens
        self.sessions = sessions
        self.lockout = lockout
        self.passwords = passwords
        self.audit = audit
        self.settings = settings
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    def _password_changed_at(self, now: datetime) -> datetime:
        return now - timedelta(milliseconds=self.settings.password_change_skew_ms)

    async def login(
        self, email: str, password: str, meta: RequestMeta = RequestMeta()
    ) -> LoginResult:
        normalized = email.strip().lower()
        identity = self.repo.load_by_email(normalized)
        if identity is None:
            self.passwords.burn(password)
            logger.info("login_unknown_account", account=redact_email(normalized))
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS)

        if not identity.is_active:
            self._audit_failure(identity, meta, reason=AuthFailure.INACTIVE.value)
            raise AuthenticationError(AuthFailure.INACTIVE)

        # Locked accounts are refused before any hashing work
        if self.lockout.is_locked(identity):
            self._audit_failure(identity, meta, reason="locked")
            raise AccountLockedError(identity.lock_until)

        if not self.passwords.verify(identity.password_hash, password):
            identity, result = self.lockout.register_failure(identity)
            if result.locked:
                if result.newly_locked:
                    self.audit.record(
                        AuditAction.ACCOUNT_LOCKED,
                        identity_id=identity.id,
                        email=identity.email,
                        ip_address=meta.ip_address,
                        user_agent=meta.user_agent,
                        details={"lock_until": result.lock_until.isoformat()},
                    )
                raise AccountLockedError(result.lock_until)
            self._audit_failure(
                identity, meta, reason=AuthFailure.INVALID_CREDENTIALS.value
            )
            raise AuthenticationError(
                AuthFailure.INVALID_CREDENTIALS,
                detail={"attempts_left": result.attempts_left},
            )

        now = self._now()
        changes = clear_on_success(identity)
        changes["last_login_at"] = now
        if self.passwords.needs_rehash(identity.password_hash):
            changes["password_hash"] = self.passwords.hash(password)
        # The new epoch is committed before any token carrying it exists
        identity = self.sessions.bump(
            identity, changes, precondition=self._still_admissible
        )
        pair = self.tokens.issue_pair(identity)
        self.audit.record(
            AuditAction.LOGIN,
            identity_id=identity.id,
            email=identity.email,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            details={"session_version": identity.session_version},
        )
        return LoginResult(identity=identity, tokens=pair)

    def _still_admissible(self, current: Identity) -> None:
        # A concurrent failure or deactivation may have landed since the checks above
        if not current.is_active:
            raise AuthenticationError(AuthFailure.INACTIVE)
        if is_locked(current, self._now()):
            logger.info("login_lock_raced", identity_id=current.id)
            raise AccountLockedError(current.lock_until)

    def _audit_failure(self, identity: Identity, meta: RequestMeta, *, reason: str) -> None:
        self.audit.record(
            AuditAction.LOGIN_FAILED,
            identity_id=identity.id,
            email=identity.email,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            details={"reason": reason},
        )

    async def refresh(self, refresh_token: str, meta: RequestMeta = RequestMeta()) -> LoginResult:
        """Re-sign a token pair under the unchanged session epoch."""
        payload = self.sessions.verify_token(refresh_token, TokenKind.REFRESH)
        ctx = self.sessions.validate(payload)
        pair = self.tokens.issue_pair(ctx.identity)
        self.audit.record(
            AuditAction.TOKEN_REFRESH,
            identity_id=ctx.identity_id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        return LoginResult(identity=ctx.identity, tokens=pair)

    async def logout(self, ctx: AuthenticatedContext, meta: RequestMeta = RequestMeta()) -> None:
        # Tokens are stateless; the client discards them and the event is recorded
        self.audit.record(
            AuditAction.LOGOUT,
            identity_id=ctx.identity_id,
            email=ctx.email,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    async def change_password(
        self,
        ctx: AuthenticatedContext,
        current_password: str,
        new_password: str,
        meta: RequestMeta = RequestMeta(),
    ) -> Identity:
        if not self.passwords.verify(ctx.identity.password_hash, current_password):
            raise AuthenticationError(
                AuthFailure.INVALID_CREDENTIALS, "Current password is incorrect"
            )
        ensure_password_strength(new_password)
        if current_password == new_password:
            raise ValidationError(
                "New password must be different from the current password",
                detail={"field": "new_password"},
            )
        new_hash = self.passwords.hash(new_password)

        def _transition(current: Identity):
            return {
                "password_hash": new_hash,
                "password_changed_at": self._password_changed_at(self._now()),
            }, None

        identity, _ = apply_transition(self.repo, ctx.identity, _transition)
        self.audit.record(
            AuditAction.PASSWORD_CHANGE,
            identity_id=identity.id,
            email=identity.email,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        return identity

    async def register(
        self,
        actor: AuthenticatedContext,
        email: str,
        password: str,
        *,
        name: str = "",
        role: Role = Role.VIEWER,
        meta: RequestMeta = RequestMeta(),
    ) -> Identity:
        actor.require_role(Role.ADMIN)
        ensure_password_strength(password)
        identity = self.create_identity(email, password, name=name, role=role)
        self.audit.record(
            AuditAction.USER_CREATE,
            identity_id=actor.identity_id,
            email=actor.email,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            details={"created_identity_id": identity.id, "role": identity.role.label},
        )
        return identity

    async def update_profile(
        self,
        ctx: AuthenticatedContext,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        meta: RequestMeta = RequestMeta(),
    ) -> Identity:
        """Change the caller's display name and/or email.

        Blank values are ignored. Moving to an address held by another
        identity raises :class:`ConflictError`.
        """
        changes: Dict[str, Any] = {}
        if name and name.strip():
            changes["name"] = name.strip()
        if email:
            normalized = email.strip().lower()
            if normalized != ctx.email:
                holder = self.repo.load_by_email(normalized)
                if holder is not None and holder.id != ctx.identity_id:
                    raise _email_taken()
                changes["email"] = normalized
        if not changes:
            return ctx.identity

        try:
            identity, _ = apply_transition(
                self.repo, ctx.identity, lambda current: (changes, None)
            )
        except ConstraintViolation:
            raise _email_taken() from None
        self.audit.record(
            AuditAction.PROFILE_UPDATE,
            identity_id=identity.id,
            email=identity.email,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            details={"fields": sorted(changes)},
        )
        return identity

    async def set_active(
        self,
        actor: AuthenticatedContext,
        identity_id: str,
        is_active: bool,
        meta: RequestMeta = RequestMeta(),
    ) -> Identity:
        """Activate or deactivate an account (admin only).

        Deactivation also advances the session epoch, so tokens issued before
        it stay dead if the account is reactivated later.
        """
        actor.require_role(Role.ADMIN)
        if identity_id == actor.identity_id and not is_active:
            raise ValidationError(
                "You cannot deactivate your own account", detail={"field": "is_active"}
            )
        target = self.repo.load_by_id(identity_id)
        if target is None:
            raise NotFoundError("User not found")

        def _transition(current: Identity):
            if current.is_active == is_active:
                return {}, None
            changes: Dict[str, Any] = {"is_active": is_active}
            if not is_active:
                changes["session_version"] = current.session_version + 1
            return changes, None

        identity, _ = apply_transition(self.repo, target, _transition)
        logger.info(
            "identity_status_changed",
            identity_id=identity.id,
            is_active=identity.is_active,
            changed_by=actor.identity_id,
        )
        self.audit.record(
            AuditAction.USER_ACTIVATE if is_active else AuditAction.USER_DEACTIVATE,
            identity_id=actor.identity_id,
            email=actor.email,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            details={"target_identity_id": identity.id},
        )
        return identity

    def create_identity(
        self, email: str, password: str, *, name: str = "", role: Role = Role.VIEWER
    ) -> Identity:
        now = self._now()
        identity = Identity.new(
            email.strip().lower(),
            self.passwords.hash(password),
            name=name.strip(),
            role=role,
            now=now,
        )
        # Back-dated like every other password write
        identity.password_changed_at = self._password_changed_at(now)
        try:
            return self.repo.create_identity(identity)
        except ConstraintViolation:
            raise ConflictError(
                "User already exists with this email", detail={"field": "email"}
            ) from None


def _email_taken() -> ConflictError:
    return ConflictError("Email is already taken by another user", detail={"field": "email"})
