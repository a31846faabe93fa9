import importlib.util
from pathlib import Path

import pytest

from gatekeeper.service.errors import ValidationError
from gatekeeper.service.runtime import get_runtime
from gatekeeper.storage.models import Role

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_creates_admin(bootstrap):
    result = bootstrap.bootstrap_admin("root@example.com", "RootPassword1", name="Root")

    assert result["status"] == "created"
    stored = get_runtime().store.load_by_email("root@example.com")
    assert stored.role is Role.ADMIN
    assert stored.name == "Root"


def test_promotes_existing_account(bootstrap):
    existing = get_runtime().auth.create_identity("staff@example.com", "StaffPassword1")

    result = bootstrap.bootstrap_admin("staff@example.com", "ignored")

    assert result == {"identity_id": existing.id, "email": "staff@example.com", "status": "promoted"}
    assert get_runtime().store.load_by_id(existing.id).role is Role.ADMIN


def test_existing_admin_untouched(bootstrap):
    get_runtime().auth.create_identity("root@example.com", "RootPassword1", role=Role.ADMIN)

    assert bootstrap.bootstrap_admin("root@example.com", "whatever")["status"] == "already_admin"


def test_dry_run_makes_no_changes(bootstrap):
    result = bootstrap.bootstrap_admin("root@example.com", "RootPassword1", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.load_by_email("root@example.com") is None


def test_weak_password_refused(bootstrap):
    with pytest.raises(ValidationError):
        bootstrap.bootstrap_admin("root@example.com", "weak")


def test_main_reports_weak_password(bootstrap, capsys):
    assert bootstrap.main(["--email", "root@example.com", "--password", "weak"]) == 1
    assert "Password does not meet requirements" in capsys.readouterr().out


def test_list_admins_filters_by_role(bootstrap, capsys):
    runtime = get_runtime()
    runtime.auth.create_identity("root@example.com", "RootPassword1", role=Role.ADMIN)
    runtime.auth.create_identity("staff@example.com", "StaffPassword1")

    assert [a["email"] for a in bootstrap.list_admins()] == ["root@example.com"]
    assert bootstrap.main(["--list-admins"]) == 0
    output = capsys.readouterr().out
    assert "root@example.com" in output
    assert "staff@example.com" not in output
