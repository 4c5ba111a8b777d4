import importlib.util
from pathlib import Path

import pytest

from conftest import STRONG_PASSWORD
from sessionward.service.rbac import ROLE_ADMIN
from sessionward.service.runtime import reset_runtime_for_tests

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def test_creates_verified_admin(bootstrap):
    runtime = reset_runtime_for_tests()

    result = await bootstrap.bootstrap_admin("root@example.com", STRONG_PASSWORD)

    assert result["status"] == "created"
    principal = runtime.store.get_principal_by_id(result["principal_id"])
    assert ROLE_ADMIN in principal.roles
    assert principal.email_verified
    assert runtime.store.get_role_by_name(ROLE_ADMIN) is not None

    again = await bootstrap.bootstrap_admin("root@example.com", STRONG_PASSWORD)
    assert again["status"] == "already_admin"


async def test_promotes_existing_principal(bootstrap):
    runtime = reset_runtime_for_tests()
    registered = await runtime.sessions.register("ops@example.com", STRONG_PASSWORD)

    result = await bootstrap.bootstrap_admin("ops@example.com", "ignored")

    assert result == {
        "principal_id": registered.principal.id,
        "email": "ops@example.com",
        "status": "promoted",
    }


async def test_dry_run_changes_nothing(bootstrap):
    runtime = reset_runtime_for_tests()
    result = await bootstrap.bootstrap_admin("root@example.com", STRONG_PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert runtime.store.get_principal_by_email("root@example.com") is None
    assert runtime.store.get_role_by_name(ROLE_ADMIN) is None
