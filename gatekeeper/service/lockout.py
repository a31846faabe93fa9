from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.repository import IdentityRepository, apply_transition
from gatekeeper.service.tokens import Clock, utc_now
from gatekeeper.storage.models import Identity

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int
    window: timedelta
    lock_duration: timedelta

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.login_max_attempts,
            window=timedelta(milliseconds=settings.login_attempt_window_ms),
            lock_duration=timedelta(milliseconds=settings.login_lock_duration_ms),
        )


@dataclass(frozen=True)
class LockoutResult:
    attempts_left: int
    lock_until: Optional[datetime]
    newly_locked: bool = False

    @property
    def locked(self) -> bool:
        return self.lock_until is not None


def is_locked(identity: Identity, now: datetime) -> bool:
    return identity.lock_until is not None and now < identity.lock_until


def register_failed_attempt(
    identity: Identity, policy: LockoutPolicy, now: datetime
) -> Tuple[Dict[str, Any], LockoutResult]:
    """Compute the lockout fields after one more failed password check.

    The counter restarts at 1 once ``policy.window`` has passed since the
    previous failure. A lock is only placed when the threshold is reached
    and no lock is currently active, so further failures never extend it.
    """
    last = identity.last_failed_login_at
    if last is None or now - last > policy.window:
        attempts = 1
    else:
        attempts = identity.failed_login_attempts + 1

    changes: Dict[str, Any] = {
        "failed_login_attempts": attempts,
        "last_failed_login_at": now,
    }
    lock_until = identity.lock_until
    newly_locked = False
    if attempts >= policy.max_attempts and not is_locked(identity, now):
        lock_until = now + policy.lock_duration
        changes["lock_until"] = lock_until
        newly_locked = True
    elif lock_until is not None and lock_until <= now:
        # An expired lock no longer means anything
        lock_until = None
        changes["lock_until"] = None

    result = LockoutResult(
        attempts_left=max(0, policy.max_attempts - attempts),
        lock_until=lock_until,
        newly_locked=newly_locked,
    )
    return changes, result


def clear_on_success(identity: Identity) -> Dict[str, Any]:
    return {
        "failed_login_attempts": 0,
        "last_failed_login_at": None,
        "lock_until": None,
    }


class LockoutTracker:
    """Applies the lockout transitions through the repository's compare-and-swap."""

    def __init__(
        self,
        repo: IdentityRepository,
        policy: LockoutPolicy,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repo = repo
        self.policy = policy
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    def is_locked(self, identity: Identity) -> bool:
        return is_locked(identity, self._now())

    def register_failure(self, identity: Identity) -> Tuple[Identity, LockoutResult]:
        # The clock is read per attempt so a retried transition sees fresh time
        def _transition(current: Identity):
            return register_failed_attempt(current, self.policy, self._now())

        updated, result = apply_transition(self.repo, identity, _transition)
        if result.newly_locked:
            logger.warning(
                "account_locked",
                identity_id=identity.id,
                lock_until=result.lock_until.isoformat() if result.lock_until else None,
                attempts=updated.failed_login_attempts,
            )
        else:
            logger.info(
                "login_failure_recorded",
                identity_id=identity.id,
                attempts_left=result.attempts_left,
            )
        return updated, result

    def clear(self, identity: Identity) -> Identity:
        updated, _ = apply_transition(
            self.repo, identity, lambda current: (clear_on_success(current), None)
        )
        return updated
