from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger, redact_email
from gatekeeper.service.audit import AuditSink
from gatekeeper.service.email import EmailService
from gatekeeper.service.errors import (
    AccountLockedError,
    EmailDeliveryError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from gatekeeper.service.lockout import is_locked
from gatekeeper.service.passwords import PasswordService, ensure_password_strength
from gatekeeper.service.repository import IdentityRepository, apply_transition
from gatekeeper.service.tokens import Clock, utc_now
from gatekeeper.storage.models import AuditAction, Identity

logger = get_logger(__name__)

OTP_DIGITS = 6


class OtpCheck(str, Enum):
    ACCEPTED = "accepted"
    MISSING = "otp_missing"
    EXPIRED = "otp_expired"
    INVALID = "otp_invalid"


_CLEARED_OTP = {"otp_code_hash": None, "otp_expires": None}

_OTP_MESSAGES = {
    OtpCheck.MISSING: "No valid OTP found. Please request a new one.",
    OtpCheck.EXPIRED: "OTP has expired. Please request a new one.",
    OtpCheck.INVALID: "Invalid OTP",
}


def generate_otp() -> str:
    return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"


def check_otp(
    identity: Identity, code_hash: str, now: datetime
) -> Tuple[Optional[Dict[str, Any]], OtpCheck]:
    """Classify a reset attempt against the pending OTP.

    An expired OTP is cleared whether or not the code matched; a wrong code
    before expiry leaves the OTP in place.
    """
    if not identity.has_pending_otp:
        return None, OtpCheck.MISSING
    if identity.otp_expires < now:
        return dict(_CLEARED_OTP), OtpCheck.EXPIRED
    if not hmac.compare_digest(identity.otp_code_hash, code_hash):
        return None, OtpCheck.INVALID
    return dict(_CLEARED_OTP), OtpCheck.ACCEPTED


class PasswordResetFlow:
    """One-time-code password reset: ``request_reset`` then ``confirm_reset``."""

    def __init__(
        self,
        repo: IdentityRepository,
        passwords: PasswordService,
        email: EmailService,
        audit: AuditSink,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repo = repo
        self.passwords = passwords
        self.email = email
        self.audit = audit
        self.settings = settings
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.otp_ttl_minutes)

    def _hash_code(self, identity_id: str, code: str) -> str:
        # Bound to the identity so a hash copied between rows is useless
        message = f"{identity_id}:{code}".encode()
        return hmac.new(
            self.settings.jwt_secret.encode(), message, hashlib.sha256
        ).hexdigest()

    def _load(self, email: str) -> Identity:
        identity = self.repo.load_by_email(email.strip().lower())
        if identity is None:
            raise NotFoundError("User not found with this email")
        if not identity.is_active:
            raise ForbiddenError("Account is deactivated")
        return identity

    async def request_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> datetime:
        """Issue a fresh OTP and email it; returns the OTP expiry.

        The OTP is committed before the email is attempted, so a transport
        failure leaves a valid code behind.
        """
        identity = self._load(email)
        now = self._now()
        if is_locked(identity, now):
            raise AccountLockedError(identity.lock_until)

        code = generate_otp()
        code_hash = self._hash_code(identity.id, code)

        def _transition(current: Identity):
            expires = self._now() + self.ttl
            return {"otp_code_hash": code_hash, "otp_expires": expires}, expires

        identity, expires = apply_transition(self.repo, identity, _transition)
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUEST,
            identity_id=identity.id,
            email=identity.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        delivered = await asyncio.to_thread(
            self.email.send_otp,
            identity.email,
            identity.name,
            code,
            self.settings.otp_ttl_minutes,
        )
        if not delivered:
            logger.error("otp_email_failed", account=redact_email(identity.email))
            raise EmailDeliveryError("Failed to send OTP email. Please try again.")
        return expires

    async def confirm_reset(
        self,
        email: str,
        code: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Identity:
        ensure_password_strength(new_password)
        identity = self._load(email)
        code_hash = self._hash_code(identity.id, code.strip())
        new_hash: Optional[str] = None

        def _transition(current: Identity):
            nonlocal new_hash
            now = self._now()
            changes, outcome = check_otp(current, code_hash, now)
            if outcome is OtpCheck.ACCEPTED:
                if new_hash is None:
                    new_hash = self.passwords.hash(new_password)
                changes.update(
                    password_hash=new_hash,
                    password_changed_at=now
                    - timedelta(milliseconds=self.settings.password_change_skew_ms),
                )
            return changes, outcome

        identity, outcome = apply_transition(self.repo, identity, _transition)
        if outcome is not OtpCheck.ACCEPTED:
            logger.info("otp_rejected", identity_id=identity.id, reason=outcome.value)
            raise ValidationError(
                _OTP_MESSAGES[outcome], detail={"field": "otp", "reason": outcome.value}
            )

        self.audit.record(
            AuditAction.PASSWORD_RESET,
            identity_id=identity.id,
            email=identity.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        delivered = await asyncio.to_thread(
            self.email.send_password_reset_success, identity.email, identity.name
        )
        if not delivered:
            logger.warning("reset_confirmation_email_failed", identity_id=identity.id)
        return identity
