from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from gatekeeper.logging import get_logger
from gatekeeper.storage.errors import ConstraintViolation, StorageUnavailableError
from gatekeeper.storage.models import Role
from gatekeeper.storage.postgres import PostgresStore

_NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "id": "ident-1",
        "email": "pg@example.com",
        "name": "",
        "password_hash": "hash",
        "role": 3,
        "is_active": True,
        "session_version": 2,
        "password_changed_at": _NOW,
        "failed_login_attempts": 0,
        "last_failed_login_at": None,
        "lock_until": None,
        "otp_code_hash": None,
        "otp_expires": None,
        "created_at": _NOW,
        "last_login_at": None,
        "revision": 5,
    }
    row.update(overrides)
    return row


class _Cursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class RecordingConnection:
    def __init__(self, row=None):
        self.row = row
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return _Cursor(self.row)

    @contextmanager
    def transaction(self):
        yield


class StubPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


class FailingPool:
    def connection(self):
        raise psycopg.OperationalError("connection refused")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    store.pool = pool
    return store


def test_compare_and_swap_guards_on_revision():
    conn = RecordingConnection(_row(session_version=3, revision=6))
    store = _store(StubPool(conn))

    updated = store.compare_and_swap_update("ident-1", 5, {"session_version": 3})

    sql, params = conn.statements[-1]
    assert "SET session_version = %s, revision = revision + 1" in sql
    assert "WHERE id = %s AND revision = %s" in sql
    assert params == [3, "ident-1", 5]
    assert updated.session_version == 3
    assert updated.role is Role.ADMIN


def test_compare_and_swap_lost_race_returns_none():
    store = _store(StubPool(RecordingConnection(None)))

    assert store.compare_and_swap_update("ident-1", 5, {"name": "x"}) is None


def test_compare_and_swap_stores_role_as_integer():
    conn = RecordingConnection(_row())
    store = _store(StubPool(conn))

    store.compare_and_swap_update("ident-1", 5, {"role": Role.MANAGER})

    _, params = conn.statements[-1]
    assert params[0] == 2


def test_compare_and_swap_rejects_unknown_fields():
    store = _store(StubPool(RecordingConnection(None)))

    with pytest.raises(ValueError):
        store.compare_and_swap_update("ident-1", 5, {"revision": 9})


class DuplicateEmailConnection(RecordingConnection):
    def execute(self, sql, params=None):
        raise errors.UniqueViolation("duplicate key value violates unique constraint")


def test_compare_and_swap_lowercases_email():
    conn = RecordingConnection(_row(email="new@example.com"))
    store = _store(StubPool(conn))

    store.compare_and_swap_update("ident-1", 5, {"email": "New@Example.com"})

    _, params = conn.statements[-1]
    assert params == ["new@example.com", "ident-1", 5]


def test_compare_and_swap_duplicate_email_is_constraint_violation():
    store = _store(StubPool(DuplicateEmailConnection()))

    with pytest.raises(ConstraintViolation):
        store.compare_and_swap_update("ident-1", 5, {"email": "taken@example.com"})


def test_load_by_email_is_case_insensitive():
    conn = RecordingConnection(_row())
    store = _store(StubPool(conn))

    identity = store.load_by_email("PG@Example.com")

    assert conn.statements[-1][1] == ("pg@example.com",)
    assert identity.email == "pg@example.com"


def test_unreachable_database_raises_unavailable():
    store = _store(FailingPool())

    with pytest.raises(StorageUnavailableError):
        store.load_by_id("ident-1")
