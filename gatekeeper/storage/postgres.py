from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from gatekeeper.logging import get_logger
from gatekeeper.storage.errors import ConstraintViolation, StorageUnavailableError
from gatekeeper.storage.models import (
    MUTABLE_IDENTITY_FIELDS,
    AuditAction,
    AuditEvent,
    Identity,
    Role,
)

_IDENTITY_COLUMNS = (
    "id, email, name, password_hash, role, is_active, session_version, "
    "password_changed_at, failed_login_attempts, last_failed_login_at, lock_until, "
    "otp_code_hash, otp_expires, created_at, last_login_at, revision"
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS identity (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        password_hash TEXT NOT NULL,
        role SMALLINT NOT NULL DEFAULT 1,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        session_version INTEGER NOT NULL DEFAULT 0 CHECK (session_version >= 0),
        password_changed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_login_at TIMESTAMPTZ,
        lock_until TIMESTAMPTZ,
        otp_code_hash TEXT,
        otp_expires TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        revision INTEGER NOT NULL DEFAULT 1,
        CHECK ((otp_code_hash IS NULL) = (otp_expires IS NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        identity_id TEXT,
        email TEXT,
        ip_address TEXT,
        user_agent TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_identity_idx ON audit_event (identity_id, created_at DESC)",
)


class PostgresStore:
    """Identity repository and audit store backed by PostgreSQL.

    Compare-and-swap updates are a single ``UPDATE ... WHERE revision = %s``
    statement, so concurrent writers are serialized by the row lock Postgres
    takes for the update and a stale writer simply matches zero rows.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailableError("identity store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.transaction():
                for statement in _SCHEMA:
                    conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> Identity:
        values = dict(row)
        values["role"] = Role(values["role"])
        return Identity(**values)

    def create_identity(self, identity: Identity) -> Identity:
        email = identity.email.lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO identity (
                        id, email, name, password_hash, role, is_active, session_version,
                        password_changed_at, created_at, revision
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
                    RETURNING {_IDENTITY_COLUMNS}
                    """,
                    (
                        identity.id,
                        email,
                        identity.name,
                        identity.password_hash,
                        int(identity.role),
                        identity.is_active,
                        identity.session_version,
                        identity.password_changed_at,
                        identity.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._identity_from_row(row)

    def load_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def load_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM identity WHERE email = %s",
                (email.lower(),),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def compare_and_swap_update(
        self, identity_id: str, expected_revision: int, changes: Dict[str, Any]
    ) -> Optional[Identity]:
        unknown = set(changes) - MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not changes:
            return self.load_by_id(identity_id)
        columns = sorted(changes)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params: List[Any] = []
        for column in columns:
            value = changes[column]
            if column == "role":
                value = int(value)
            elif column == "email":
                value = value.lower()
            params.append(value)
        params.extend([identity_id, expected_revision])
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        f"""
                        UPDATE identity
                        SET {assignments}, revision = revision + 1
                        WHERE id = %s AND revision = %s
                        RETURNING {_IDENTITY_COLUMNS}
                        """,
                        params,
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._identity_from_row(row) if row else None

    def list_identities(self) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM identity ORDER BY created_at"
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, action, identity_id, email, ip_address, user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action.value,
                    event.identity_id,
                    event.email,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.details) if event.details else None,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, *, identity_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        query = "SELECT * FROM audit_event"
        params: List[Any] = []
        if identity_id is not None:
            query += " WHERE identity_id = %s"
            params.append(identity_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        events = []
        for row in rows:
            details = row.get("details")
            if isinstance(details, str):
                details = json.loads(details)
            events.append(
                AuditEvent(
                    id=row["id"],
                    action=AuditAction(row["action"]),
                    identity_id=row.get("identity_id"),
                    email=row.get("email"),
                    ip_address=row.get("ip_address"),
                    user_agent=row.get("user_agent"),
                    details=details or {},
                    created_at=row["created_at"],
                )
            )
        return events
