"""
tests/test_guard.py -- PermissionGuard decisions against a seeded store.

Covers:
  - public routes, unregistered routes, malformed expressions
  - anonymous callers and callers with a bad token
  - exact grants, resource wildcard, OAUTH2_global wildcard, deny-by-default
  - soft-deleted subjects and roles
  - revoked clients (revocation wins over any grant)
  - clients bound to a long-lived token
  - store failures
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import AuthenticationError, ConfigurationError, TokenError
from auth.guard import PermissionGuard, parse_expression, permits
from auth.models import Principal, SubjectType
from auth.registry import PUBLIC, RouteRegistry
from auth.tokens import encrypt_secret, hash_long_lived_token, hash_password, mint_token
from conftest import CRYPTO_SECRET, SECRET_KEY


def permission_id(store, resource_name: str, action: str) -> int:
    for resource in store.list_resources(0, 100).items:
        if resource.resource_name == resource_name:
            return next(p.id for p in resource.permissions if p.allowed == action)
    raise AssertionError(f"{resource_name}:{action} not seeded")


@pytest.fixture
def registry() -> RouteRegistry:
    r = RouteRegistry()
    r.register("POST", "/role", "OAUTH2_role:create")
    r.register("GET", "/role", "OAUTH2_role:select")
    r.register("DELETE", "/role/{id}", "OAUTH2_role:delete")
    r.register("GET", "/billing", "billing:select")
    r.register("POST", "/bad", "badexpression")
    r.register("GET", "/open", PUBLIC)
    r.freeze()
    return r


@pytest.fixture
def world(seeded, registry):
    """Guard plus a few subjects: admin, a role creator, a billing user and a client."""
    store, _ = seeded
    store.create_resource("billing", store.list_applications()[0].id)

    creator_role = store.create_role("role-creator", [permission_id(store, "OAUTH2_role", "create")])
    billing_role = store.create_role("billing-all", [permission_id(store, "billing", "*")])
    admin_role_id = next(r.id for r in store.list_roles(0, 100).items if r.identifier == "admin")

    creator = store.create_user("Creator", hash_password("password1"), "Role Creator", [creator_role.id])
    biller = store.create_user("biller", hash_password("password1"), "Billing", [billing_role.id])
    client = store.create_client(
        "robot", "robot-id::client.app", encrypt_secret("robot-secret", CRYPTO_SECRET), "Robot", [admin_role_id]
    )
    admin = store.get_user_by_username("admin")

    return {
        "guard": PermissionGuard(registry, store),
        "store": store,
        "admin": Principal(admin.subject_id, SubjectType.USER, "admin"),
        "creator": Principal(creator.subject_id, SubjectType.USER, creator.username),
        "biller": Principal(biller.subject_id, SubjectType.USER, biller.username),
        "client": Principal(client.subject_id, SubjectType.CLIENT, client.identifier),
        "creator_role": creator_role,
    }


def test_parse_expression() -> None:
    assert parse_expression("OAUTH2_role:create") == ("OAUTH2_role", "create")


@pytest.mark.parametrize("expression", ["badexpression", "a:b:c", ":create", "role:", ""])
def test_parse_expression_rejects_malformed(expression: str) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        parse_expression(expression)
    assert exc_info.value.code == 403200


def test_permits() -> None:
    assert permits([("OAUTH2_global", ["*"])], "anything", "delete")
    assert permits([("billing", ["*"])], "billing", "delete")
    assert permits([("billing", ["select"])], "billing", "select")
    assert not permits([("billing", ["select"])], "billing", "delete")
    assert not permits([("OAUTH2_global", ["select"])], "billing", "select")
    assert not permits([], "billing", "select")


class TestRouteResolution:
    def test_public_route_needs_no_identity(self, world) -> None:
        assert world["guard"].evaluate("GET", "/open", {}, None).allowed

    def test_unregistered_route(self, world) -> None:
        decision = world["guard"].evaluate("GET", "/missing", {}, world["admin"])
        assert not decision.allowed
        assert decision.error.code == 403300

    def test_malformed_expression_rejected_before_identity(self, world) -> None:
        for principal in (None, world["admin"]):
            decision = world["guard"].evaluate("POST", "/bad", {}, principal)
            assert not decision.allowed
            assert decision.error.code == 403200
            assert decision.error.status_code == 403


class TestIdentity:
    def test_anonymous_rejected(self, world) -> None:
        decision = world["guard"].evaluate("POST", "/role", {}, None)
        assert isinstance(decision.error, AuthenticationError)
        assert decision.error.status_code == 401

    def test_bad_token_error_surfaces(self, world) -> None:
        token_error = TokenError("Token has expired")
        decision = world["guard"].evaluate("POST", "/role", {}, None, token_error=token_error)
        assert decision.error is token_error


class TestGrants:
    def test_post_role_allowed_with_exact_permission(self, world) -> None:
        assert world["guard"].evaluate("POST", "/role", {}, world["creator"]).allowed

    def test_post_role_denied_without_permission(self, world) -> None:
        decision = world["guard"].evaluate("POST", "/role", {}, world["biller"])
        assert not decision.allowed
        assert decision.error.code == 403100

    def test_deny_by_default_for_other_actions(self, world) -> None:
        decision = world["guard"].evaluate("GET", "/role", {}, world["creator"])
        assert decision.error.code == 403100

    def test_resource_wildcard(self, world) -> None:
        assert world["guard"].evaluate("GET", "/billing", {}, world["biller"]).allowed

    def test_global_wildcard(self, world) -> None:
        guard = world["guard"]
        for method, path, params in [("POST", "/role", {}), ("DELETE", "/role/3", {"id": "3"}), ("GET", "/billing", {})]:
            assert guard.evaluate(method, path, params, world["admin"]).allowed

    def test_deleted_user_rejected(self, world) -> None:
        world["store"].delete_subject(SubjectType.USER, world["creator"].subject_id)
        decision = world["guard"].evaluate("POST", "/role", {}, world["creator"])
        assert decision.error.code == 403100

    def test_deleted_role_grants_nothing(self, world) -> None:
        world["store"].delete_role(world["creator_role"].id)
        assert not world["guard"].evaluate("POST", "/role", {}, world["creator"]).allowed

    def test_unknown_subject_rejected(self, world) -> None:
        ghost = Principal(9999, SubjectType.USER, "ghost")
        assert world["guard"].evaluate("POST", "/role", {}, ghost).error.code == 403100


class TestClients:
    def test_client_with_admin_role_allowed(self, world) -> None:
        assert world["guard"].evaluate("POST", "/role", {}, world["client"]).allowed

    def test_revocation_wins_over_wildcard(self, world) -> None:
        world["store"].set_client_revoked(world["client"].subject_id, True)
        decision = world["guard"].evaluate("POST", "/role", {}, world["client"])
        assert not decision.allowed
        assert decision.error.code == 403100
        assert "revoked" in decision.error.message

    def test_long_lived_token_must_be_presented(self, world) -> None:
        long_lived = mint_token(world["client"], SECRET_KEY)
        world["store"].set_client_access_token(world["client"].subject_id, hash_long_lived_token(long_lived))
        short_lived = mint_token(world["client"], SECRET_KEY, expire_seconds=60)

        guard = world["guard"]
        assert not guard.evaluate("POST", "/role", {}, world["client"], presented_token=short_lived).allowed
        assert not guard.evaluate("POST", "/role", {}, world["client"]).allowed
        assert guard.evaluate("POST", "/role", {}, world["client"], presented_token=long_lived).allowed


def test_store_failure_becomes_store_error(world, monkeypatch) -> None:
    def broken(principal):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(world["store"], "get_subject_record", broken)
    decision = world["guard"].evaluate("POST", "/role", {}, world["admin"])
    assert not decision.allowed
    assert decision.error.status_code == 500
    assert decision.error.original_error is not None


class TestRoleScenario:
    """POST /role needs OAUTH2_role:create; select alone is not enough, * on the resource is."""

    def _user_with(self, store, username: str, permission_ids: list[int]) -> Principal:
        role = store.create_role(f"{username}-role", permission_ids)
        user = store.create_user(username, hash_password("password1"), username, [role.id])
        return Principal(user.subject_id, SubjectType.USER, user.username)

    def test_select_only_is_rejected(self, world) -> None:
        store = world["store"]
        reader = self._user_with(store, "reader", [permission_id(store, "OAUTH2_role", "select")])
        decision = world["guard"].evaluate("POST", "/role", {}, reader)
        assert not decision.allowed
        assert decision.error.code == 403100

    def test_resource_wildcard_is_allowed(self, world) -> None:
        store = world["store"]
        owner = self._user_with(store, "owner", [permission_id(store, "OAUTH2_role", "*")])
        assert world["guard"].evaluate("POST", "/role", {}, owner).allowed

    def test_subject_without_permissions_rejected_everywhere(self, world) -> None:
        store = world["store"]
        nobody = self._user_with(store, "nobody", [])
        guard = world["guard"]
        for method, path, params in [("POST", "/role", {}), ("GET", "/role", {}), ("DELETE", "/role/1", {"id": "1"}), ("GET", "/billing", {})]:
            assert guard.evaluate(method, path, params, nobody).error.code == 403100
        assert guard.evaluate("GET", "/open", {}, nobody).allowed
