from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from gatekeeper.logging import get_logger
from gatekeeper.service.errors import AuthFailure, AuthenticationError, ForbiddenError
from gatekeeper.service.repository import IdentityRepository, apply_transition
from gatekeeper.service.tokens import (
    TokenError,
    TokenErrorReason,
    TokenKind,
    TokenPayload,
    TokenService,
)
from gatekeeper.storage.models import Identity, Role, satisfies

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedContext:
    """Identity state a request was authenticated against.

    Built once by :class:`SessionGuard` from the live identity, never from
    token claims alone.
    """

    identity: Identity
    session_version: int
    token_id: str
    issued_at: datetime

    @property
    def identity_id(self) -> str:
        return self.identity.id

    @property
    def email(self) -> str:
        return self.identity.email

    @property
    def role(self) -> Role:
        return self.identity.role

    def has_role(self, required: Role) -> bool:
        return satisfies(self.identity.role, required)

    def require_role(self, required: Role) -> None:
        if not self.has_role(required):
            logger.warning(
                "role_check_failed",
                identity_id=self.identity.id,
                role=self.identity.role.label,
                required=required.label,
            )
            raise ForbiddenError(
                "Access denied. Insufficient permissions.",
                detail={"required_role": required.label},
            )


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = credentials.strip()
    return token or None


_TOKEN_FAILURES = {
    TokenErrorReason.EXPIRED: AuthFailure.TOKEN_EXPIRED,
    TokenErrorReason.MALFORMED: AuthFailure.TOKEN_INVALID,
    TokenErrorReason.INVALID_SIGNATURE: AuthFailure.TOKEN_INVALID,
}


class SessionGuard:
    """Single-active-session enforcement.

    A token stays valid only while its ``session_version`` equals the stored
    one and it was issued no earlier than the last password change. Login
    bumps the stored version, which retires every previously issued token.
    """

    def __init__(self, tokens: TokenService, repo: IdentityRepository) -> None:
        self.tokens = tokens
        self.repo = repo

    def verify_token(self, token: str, kind: TokenKind) -> TokenPayload:
        try:
            return self.tokens.verify(token, expected_kind=kind)
        except TokenError as exc:
            logger.info("token_rejected", reason=exc.reason.value, kind=kind.value)
            raise AuthenticationError(_TOKEN_FAILURES[exc.reason]) from None

    def validate(self, payload: TokenPayload) -> AuthenticatedContext:
        identity = self.repo.load_by_id(payload.id)
        if identity is None:
            logger.warning("session_identity_missing", identity_id=payload.id)
            raise AuthenticationError(AuthFailure.SESSION_INVALIDATED)
        if not identity.is_active:
            raise AuthenticationError(AuthFailure.INACTIVE)
        if payload.session_version != identity.session_version:
            logger.info(
                "session_superseded",
                identity_id=identity.id,
                token_version=payload.session_version,
                current_version=identity.session_version,
            )
            raise AuthenticationError(AuthFailure.SESSION_INVALIDATED)
        # iat carries whole seconds only
        if payload.iat < math.floor(identity.password_changed_at.timestamp()):
            logger.info("token_predates_password_change", identity_id=identity.id)
            raise AuthenticationError(AuthFailure.PASSWORD_CHANGED)
        return AuthenticatedContext(
            identity=identity,
            session_version=identity.session_version,
            token_id=payload.jti,
            issued_at=payload.issued_at,
        )

    def authenticate(self, authorization: Optional[str]) -> AuthenticatedContext:
        token = _extract_bearer(authorization)
        if token is None:
            raise AuthenticationError(AuthFailure.TOKEN_MISSING)
        payload = self.verify_token(token, TokenKind.ACCESS)
        return self.validate(payload)

    def bump(
        self,
        identity: Identity,
        extra_changes: Optional[Dict[str, Any]] = None,
        *,
        precondition: Optional[Callable[[Identity], None]] = None,
    ) -> Identity:
        """Advance the session epoch and persist it, together with ``extra_changes``.

        ``precondition`` runs against each copy a write is attempted from and
        may raise to abort the bump. Returns the committed identity;
        tokens must be issued from it only.
        """

        def _transition(current: Identity):
            if precondition is not None:
                precondition(current)
            changes = dict(extra_changes or {})
            changes["session_version"] = current.session_version + 1
            return changes, None

        updated, _ = apply_transition(self.repo, identity, _transition)
        logger.info(
            "session_version_bumped",
            identity_id=updated.id,
            session_version=updated.session_version,
        )
        return updated
