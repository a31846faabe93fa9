from datetime import datetime, timedelta, timezone

import pytest

from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.models import AuditAction, AuditEvent, Identity, Role


def _identity(email="store@example.com", **kwargs) -> Identity:
    return Identity.new(email, "hash", **kwargs)


def test_create_assigns_first_revision_and_normalizes_email():
    store = MemoryStore()
    created = store.create_identity(_identity("Mixed@Example.COM"))

    assert created.revision == 1
    assert created.email == "mixed@example.com"
    assert store.load_by_email("MIXED@example.com").id == created.id


def test_duplicate_email_rejected():
    store = MemoryStore()
    store.create_identity(_identity())

    with pytest.raises(ConstraintViolation):
        store.create_identity(_identity("STORE@example.com"))


def test_loaded_copies_are_detached():
    store = MemoryStore()
    created = store.create_identity(_identity())

    loaded = store.load_by_id(created.id)
    loaded.session_version = 99

    assert store.load_by_id(created.id).session_version == 0


def test_compare_and_swap_applies_on_matching_revision():
    store = MemoryStore()
    created = store.create_identity(_identity())

    updated = store.compare_and_swap_update(created.id, 1, {"session_version": 1})

    assert updated.session_version == 1
    assert updated.revision == 2


def test_compare_and_swap_refuses_stale_revision():
    store = MemoryStore()
    created = store.create_identity(_identity())
    store.compare_and_swap_update(created.id, 1, {"name": "first"})

    assert store.compare_and_swap_update(created.id, 1, {"name": "second"}) is None
    assert store.load_by_id(created.id).name == "first"


def test_compare_and_swap_unknown_identity():
    assert MemoryStore().compare_and_swap_update("missing", 1, {"name": "x"}) is None


def test_compare_and_swap_rejects_immutable_fields():
    store = MemoryStore()
    created = store.create_identity(_identity())

    with pytest.raises(ValueError):
        store.compare_and_swap_update(created.id, 1, {"created_at": created.created_at})


def test_email_change_moves_index():
    store = MemoryStore()
    created = store.create_identity(_identity())

    store.compare_and_swap_update(created.id, 1, {"email": "Moved@Example.com"})

    assert store.load_by_email("store@example.com") is None
    assert store.load_by_email("moved@example.com").id == created.id


def test_email_change_to_taken_address_conflicts():
    store = MemoryStore()
    first = store.create_identity(_identity("a@example.com"))
    store.create_identity(_identity("b@example.com"))

    with pytest.raises(ConstraintViolation):
        store.compare_and_swap_update(first.id, 1, {"email": "B@example.com"})
    assert store.load_by_id(first.id).email == "a@example.com"
    assert store.load_by_id(first.id).revision == 1


def test_state_persists_across_instances(tmp_path):
    lock_until = datetime(2030, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=30)
    store = MemoryStore(fs_root=str(tmp_path))
    created = store.create_identity(_identity(name="Persisted", role=Role.ADMIN))
    store.compare_and_swap_update(
        created.id,
        created.revision,
        {"session_version": 4, "failed_login_attempts": 2, "lock_until": lock_until},
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))
    identity = reloaded.load_by_email("store@example.com")

    assert identity.id == created.id
    assert identity.name == "Persisted"
    assert identity.role is Role.ADMIN
    assert identity.session_version == 4
    assert identity.failed_login_attempts == 2
    assert identity.lock_until == lock_until
    assert identity.revision == 2
    assert (tmp_path / "state" / "identities.json").exists()


def test_list_identities_in_creation_order():
    store = MemoryStore()
    base = datetime(2030, 1, 1, tzinfo=timezone.utc)
    second = store.create_identity(_identity("b@example.com", now=base + timedelta(seconds=1)))
    first = store.create_identity(_identity("a@example.com", now=base))

    assert [i.id for i in store.list_identities()] == [first.id, second.id]


def test_audit_events_newest_first_and_filtered():
    store = MemoryStore()
    store.record_audit_event(AuditEvent.new(AuditAction.LOGIN, identity_id="one"))
    store.record_audit_event(AuditEvent.new(AuditAction.LOGOUT, identity_id="two"))
    store.record_audit_event(AuditEvent.new(AuditAction.LOGOUT, identity_id="one"))

    events = store.list_audit_events(identity_id="one")

    assert [e.action for e in events] == [AuditAction.LOGOUT, AuditAction.LOGIN]
    assert len(store.list_audit_events(limit=2)) == 2
