"""
tests/test_bootstrap.py -- Schema audit, rebuild and seeding.

Covers:
  - first run on an empty database rebuilds and seeds
  - a second run is a no-op (idempotence)
  - column drift triggers a full rebuild
  - a missing admin triggers a seed-only run that reactivates rows
  - credentials file contents and 0600 mode
  - reflection failures surface as SchemaAuditError
"""

from __future__ import annotations

import os
import stat

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from auth.bootstrap import SYSTEM_RESOURCES, SchemaBootstrap
from auth.errors import SchemaAuditError
from auth.models import SubjectType
from auth.schema import EXPECTED_SCHEMA, STANDARD_ACTIONS
from auth.store import IdentityStore
from auth.tokens import decrypt_secret, verify_password
from conftest import CRYPTO_SECRET, make_bootstrap, memory_url


@pytest.fixture
def fresh(tmp_path):
    store = IdentityStore(memory_url("bootstrap"))
    bootstrap = make_bootstrap(store, tmp_path / "credentials.txt", extra_resources=["billing", "OAUTH2_user"])
    yield store, bootstrap
    store.close()


def _resource_names(store: IdentityStore) -> list[str]:
    return [r.resource_name for r in store.list_resources(0, 100).items]


class TestFirstRun:
    def test_empty_database_is_rebuilt_and_seeded(self, fresh) -> None:
        store, bootstrap = fresh
        assert len(bootstrap.audit()) == len(EXPECTED_SCHEMA)

        result = bootstrap.run()

        assert result.rebuilt and result.seeded
        assert result.credentials is not None
        assert bootstrap.audit() == []

    def test_seeded_resources_and_permissions(self, fresh) -> None:
        store, bootstrap = fresh
        bootstrap.run()

        names = _resource_names(store)
        assert names[0] == "OAUTH2_global"
        assert names == [*SYSTEM_RESOURCES, "billing"]
        for resource in store.list_resources(0, 100).items:
            assert sorted(resource.actions) == sorted(STANDARD_ACTIONS)

    def test_admin_role_holds_only_global_wildcard(self, fresh) -> None:
        store, bootstrap = fresh
        bootstrap.run()

        [admin_role] = [r for r in store.list_roles(0, 100).items if r.identifier == "admin"]
        assert [(r.resource_name, r.actions) for r in admin_role.resources] == [("OAUTH2_global", ["*"])]

    def test_admin_user_and_client_share_one_subject(self, fresh) -> None:
        store, bootstrap = fresh
        credentials = bootstrap.run().credentials

        user = store.get_user_by_username("admin")
        client = store.get_client_by_client_id(credentials.client_id)
        assert user.subject_id == client.subject_id
        assert verify_password(credentials.password, user.hashed_password)
        assert decrypt_secret(client.client_secret, CRYPTO_SECRET) == credentials.client_secret
        assert credentials.client_id.endswith("::client.app")

    def test_credentials_file(self, fresh) -> None:
        _, bootstrap = fresh
        credentials = bootstrap.run().credentials

        path = bootstrap.credentials_path
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        body = path.read_text(encoding="utf-8")
        assert f"Username: {credentials.username}" in body
        assert f"Password: {credentials.password}" in body
        assert f"client_id: {credentials.client_id}" in body
        assert f"client_secret: {credentials.client_secret}" in body

    def test_existing_credentials_file_gets_tightened(self, fresh) -> None:
        _, bootstrap = fresh
        bootstrap.credentials_path.write_text("old", encoding="utf-8")
        os.chmod(bootstrap.credentials_path, 0o644)

        bootstrap.run()

        assert stat.S_IMODE(os.stat(bootstrap.credentials_path).st_mode) == 0o600


class TestIdempotence:
    def test_second_run_changes_nothing(self, fresh) -> None:
        store, bootstrap = fresh
        first = bootstrap.run()
        before = (store.list_resources(0, 100).total_items, store.list_roles(0, 100).total_items)

        second = bootstrap.run()

        assert not second.rebuilt and not second.seeded
        assert second.credentials is None
        assert (store.list_resources(0, 100).total_items, store.list_roles(0, 100).total_items) == before
        user = store.get_user_by_username("admin")
        assert verify_password(first.credentials.password, user.hashed_password)


class TestDrift:
    def test_column_drift_triggers_rebuild(self, fresh) -> None:
        store, bootstrap = fresh
        first = bootstrap.run()
        store.create_role("survivor", [])
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE oauth2_role_permissions"))
            conn.execute(
                text(
                    "CREATE TABLE oauth2_role_permissions ("
                    "id INTEGER PRIMARY KEY, role_id INTEGER, permission_id INTEGER, "
                    "created_at VARCHAR(32) NOT NULL, updated_at TEXT NOT NULL)"
                )
            )

        problems = bootstrap.audit()
        assert any(p.startswith("oauth2_role_permissions.role_id") for p in problems)
        assert any(p.startswith("oauth2_role_permissions.updated_at") for p in problems)

        result = bootstrap.run()

        assert result.rebuilt
        assert result.inconsistencies == problems
        assert bootstrap.audit() == []
        # Rebuild discards existing data and issues new credentials.
        assert [r.identifier for r in store.list_roles(0, 100).items] == ["admin"]
        assert result.credentials.password != first.credentials.password

    def test_missing_table_triggers_rebuild(self, fresh) -> None:
        store, bootstrap = fresh
        bootstrap.run()
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE oauth2_subject_roles"))

        assert bootstrap.audit() == ["oauth2_subject_roles: table missing"]
        assert bootstrap.run().rebuilt

    def test_unreflectable_table_raises(self, fresh) -> None:
        _, bootstrap = fresh

        class BrokenInspector:
            def get_columns(self, table_name):
                raise OperationalError("PRAGMA table_info", {}, Exception("disk I/O error"))

        with pytest.raises(SchemaAuditError) as exc_info:
            bootstrap.audit_table(BrokenInspector(), "oauth2_roles", EXPECTED_SCHEMA["oauth2_roles"])
        assert exc_info.value.original_error is not None


class TestReseed:
    def test_deleted_admin_is_reseeded_without_rebuild(self, fresh) -> None:
        store, bootstrap = fresh
        first = bootstrap.run()
        admin = store.get_user_by_username("admin")
        store.create_role("survivor", [])
        resources_before = store.list_resources(0, 100).total_items
        store.delete_subject(SubjectType.USER, admin.subject_id)
        assert not bootstrap.has_admin_user()

        result = bootstrap.run()

        assert result.seeded and not result.rebuilt
        assert bootstrap.has_admin_user()
        assert "survivor" in [r.identifier for r in store.list_roles(0, 100).items]
        assert store.list_resources(0, 100).total_items == resources_before
        # Public client id stays, secrets rotate.
        assert result.credentials.client_id == first.credentials.client_id
        assert result.credentials.client_secret != first.credentials.client_secret
        reseeded = store.get_user_by_username("admin")
        assert reseeded.is_active
        assert verify_password(result.credentials.password, reseeded.hashed_password)

    def test_deleted_seed_resource_is_reactivated(self, fresh) -> None:
        store, bootstrap = fresh
        bootstrap.run()
        billing = next(r for r in store.list_resources(0, 100).items if r.resource_name == "billing")
        store.delete_resource(billing.id)
        store.delete_subject(SubjectType.USER, store.get_user_by_username("admin").subject_id)

        bootstrap.run()

        restored = next(r for r in store.list_resources(0, 100).items if r.resource_name == "billing")
        assert restored.id == billing.id
        assert sorted(restored.actions) == sorted(STANDARD_ACTIONS)

    def test_reseed_can_be_disabled(self, tmp_path) -> None:
        store = IdentityStore(memory_url("noreseed"))
        try:
            make_bootstrap(store, tmp_path / "c.txt").run()
            store.delete_subject(SubjectType.USER, store.get_user_by_username("admin").subject_id)

            result = make_bootstrap(store, tmp_path / "c.txt", reseed_when_no_admin=False).run()

            assert not result.seeded
            assert not SchemaBootstrap(store.engine, crypto_secret=CRYPTO_SECRET).has_admin_user()
        finally:
            store.close()
