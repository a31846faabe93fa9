from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from gatekeeper.logging import get_logger
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import (
    MUTABLE_IDENTITY_FIELDS,
    AuditEvent,
    Identity,
    RateBucket,
    Role,
)

logger = get_logger(__name__)

_DATETIME_FIELDS = (
    "password_changed_at",
    "last_failed_login_at",
    "lock_until",
    "otp_expires",
    "created_at",
    "last_login_at",
)

# Cap on retained audit events; the oldest are dropped first
_AUDIT_RETENTION = 10_000


class MemoryStore:
    """In-process identity repository and audit store.

    Used for tests and single-node development. When ``fs_root`` is given the
    identities are written to ``<fs_root>/state/identities.json`` after every
    change and reloaded on start-up.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.fs_root = Path(fs_root) if fs_root else None
        self.identities: Dict[str, Identity] = {}
        self._email_index: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        self._data_lock = threading.RLock()
        if self.fs_root is not None:
            self._load_state()

    # -- identities -------------------------------------------------------

    def create_identity(self, identity: Identity) -> Identity:
        email = identity.email.lower()
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(identity, email=email, revision=1)
            self.identities[stored.id] = stored
            self._email_index[email] = stored.id
            self._persist_state()
            return replace(stored)

    def load_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def load_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity_id = self._email_index.get(email.lower())
            if identity_id is None:
                return None
            return replace(self.identities[identity_id])

    def compare_and_swap_update(
        self, identity_id: str, expected_revision: int, changes: Dict[str, Any]
    ) -> Optional[Identity]:
        unknown = set(changes) - MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if "email" in changes:
            changes = {**changes, "email": changes["email"].lower()}
        with self._data_lock:
            current = self.identities.get(identity_id)
            if current is None or current.revision != expected_revision:
                return None
            new_email = changes.get("email", current.email)
            if self._email_index.get(new_email, identity_id) != identity_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(current, **changes, revision=current.revision + 1)
            self.identities[identity_id] = updated
            if new_email != current.email:
                del self._email_index[current.email]
                self._email_index[new_email] = identity_id
            self._persist_state()
            return replace(updated)

    def list_identities(self) -> List[Identity]:
        with self._data_lock:
            return [
                replace(identity)
                for identity in sorted(self.identities.values(), key=lambda i: i.created_at)
            ]

    # -- audit ------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            if len(self.audit_events) > _AUDIT_RETENTION:
                del self.audit_events[: len(self.audit_events) - _AUDIT_RETENTION]

    def list_audit_events(
        self, *, identity_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e for e in self.audit_events
                if identity_id is None or e.identity_id == identity_id
            ]
        return list(reversed(events))[:limit]

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identities.json"

    @staticmethod
    def _serialize_identity(identity: Identity) -> Dict[str, Any]:
        data = dict(identity.__dict__)
        data["role"] = identity.role.label
        for name in _DATETIME_FIELDS:
            value = data.get(name)
            data[name] = value.isoformat() if value else None
        return data

    @staticmethod
    def _deserialize_identity(data: Dict[str, Any]) -> Identity:
        values = dict(data)
        values["role"] = Role.parse(values.get("role", "viewer"))
        for name in _DATETIME_FIELDS:
            raw = values.get(name)
            values[name] = datetime.fromisoformat(raw) if raw else None
        if values.get("created_at") is None:
            values.pop("created_at", None)
        if values.get("password_changed_at") is None:
            values.pop("password_changed_at", None)
        return Identity(**values)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self._email_index = {i.email: i.id for i in self.identities.values()}
        logger.info("memory_store_loaded", identities=len(self.identities))
        return True


class MemoryCounterStore:
    """Process-local fixed-window counters for the rate limiter."""

    def __init__(self) -> None:
        self._buckets: Dict[str, RateBucket] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[RateBucket]:
        with self._lock:
            bucket = self._buckets.get(key)
            return replace(bucket) if bucket else None

    async def increment(
        self, key: str, *, window_ms: int, limit: int, now_ms: int
    ) -> RateBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or now_ms > bucket.reset_at:
                bucket = RateBucket(count=1, reset_at=now_ms + window_ms)
                self._buckets[key] = bucket
                self._prune(now_ms)
                return replace(bucket)
            if bucket.count < limit:
                bucket.count += 1
                return replace(bucket)
            return RateBucket(count=bucket.count, reset_at=bucket.reset_at, allowed=False)

    async def expire(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def _prune(self, now_ms: int) -> None:
        if len(self._buckets) < 10_000:
            return
        stale = [k for k, b in self._buckets.items() if now_ms > b.reset_at]
        for key in stale:
            del self._buckets[key]


__all__ = ["MemoryCounterStore", "MemoryStore"]
