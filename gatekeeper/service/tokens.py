from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.storage.models import Identity, Role

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenErrorReason(str, Enum):
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"


class TokenError(Exception):
    def __init__(self, reason: TokenErrorReason, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


@dataclass(frozen=True)
class TokenPayload:
    id: str
    email: str
    role: Role
    session_version: int
    iat: int
    exp: int
    kind: TokenKind
    jti: str

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


class TokenService:
    """Stateless HS256 tokens carrying the identity's session epoch.

    Verification is only a signature and lifetime check; whether the epoch
    is still current is decided by :class:`SessionGuard` against the stored
    identity.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    def _ttl(self, kind: TokenKind) -> timedelta:
        if kind is TokenKind.ACCESS:
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def issue(self, identity: Identity, kind: TokenKind) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "id": identity.id,
            "email": identity.email,
            "role": identity.role.label,
            "session_version": identity.session_version,
            "token_type": kind.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl(kind)).timestamp()),
        }
        return self._encode_jwt(payload)

    def issue_pair(self, identity: Identity) -> TokenPair:
        return TokenPair(
            access_token=self.issue(identity, TokenKind.ACCESS),
            refresh_token=self.issue(identity, TokenKind.REFRESH),
            access_expires_in=int(self._ttl(TokenKind.ACCESS).total_seconds()),
            refresh_expires_in=int(self._ttl(TokenKind.REFRESH).total_seconds()),
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, expected_kind: Optional[TokenKind] = None) -> TokenPayload:
        if not token or not isinstance(token, str):
            raise TokenError(TokenErrorReason.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenError(TokenErrorReason.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(TokenErrorReason.MALFORMED) from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError(TokenErrorReason.MALFORMED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenErrorReason.MALFORMED) from None
        if not isinstance(claims, dict):
            raise TokenError(TokenErrorReason.MALFORMED)
        if claims.get("iss") != self.settings.jwt_issuer:
            raise TokenError(TokenErrorReason.MALFORMED, "issuer mismatch")
        if claims.get("aud") != self.settings.jwt_audience:
            raise TokenError(TokenErrorReason.MALFORMED, "audience mismatch")

        payload = self._payload_from_claims(claims)
        if expected_kind is not None and payload.kind is not expected_kind:
            raise TokenError(TokenErrorReason.MALFORMED, "unexpected token type")
        if self._now().timestamp() >= payload.exp:
            raise TokenError(TokenErrorReason.EXPIRED)
        return payload

    @staticmethod
    def _payload_from_claims(claims: dict[str, Any]) -> TokenPayload:
        try:
            session_version = claims["session_version"]
            iat = claims["iat"]
            exp = claims["exp"]
            if not all(isinstance(v, int) and not isinstance(v, bool) for v in (session_version, iat, exp)):
                raise TypeError("numeric claims must be integers")
            return TokenPayload(
                id=str(claims["id"]),
                email=str(claims["email"]),
                role=Role.parse(claims["role"]),
                session_version=session_version,
                iat=iat,
                exp=exp,
                kind=TokenKind(claims["token_type"]),
                jti=str(claims.get("jti", "")),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenErrorReason.MALFORMED, "missing or invalid claims") from None
