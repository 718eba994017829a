import importlib.util
from pathlib import Path

import pytest

from idwarden.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


class TestBootstrapAdmin:
    async def test_creates_admin(self, bootstrap):
        result = await bootstrap("root_admin", "CorrectHorse9!", email="admin@example.com")

        assert result["status"] == "created"
        roles = get_runtime().roles.role_names_for(result["credential_id"])
        assert sorted(roles) == ["ADMIN", "USER"]

    async def test_promotes_then_noop(self, bootstrap):
        runtime = get_runtime()
        existing = await runtime.auth.register("ops_user", "CorrectHorse9!", email="ops@example.com")

        promoted = await bootstrap("ops_user", "ignored")
        again = await bootstrap("ops_user", "ignored")

        assert promoted["status"] == "promoted"
        assert promoted["credential_id"] == existing.credential.id
        assert again["status"] == "already_admin"

    async def test_dry_run_changes_nothing(self, bootstrap):
        result = await bootstrap("root_admin", "CorrectHorse9!", email="admin@example.com", dry_run=True)
        assert result["status"] == "dry_run"
        assert get_runtime().store.get_credential_by_username("root_admin") is None
