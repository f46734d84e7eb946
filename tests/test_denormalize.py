"""
tests/test_denormalize.py -- Unit tests for the row-to-tree functions.

The row dicts mirror what IdentityStore's join queries return.
"""

from __future__ import annotations

import pytest

from auth.denormalize import (
    build_resource_tree,
    build_role_tree,
    build_subject_tree,
    ensure_contiguous,
    flatten_grants,
    group_adjacent,
)
from auth.models import SubjectType


def _row(subject=1, role=10, role_deleted=False, resource="OAUTH2_role", permission=100, allowed="create", **extra):
    row = {
        "id": subject,
        "subject_id": subject + 1000,
        "name": f"Subject {subject}",
        "description": None,
        "login": f"user{subject}",
        "role_id": role,
        "role_identifier": f"role{role}" if role is not None else None,
        "role_deleted": role_deleted,
        "resource_id": hash(resource) % 1000 if resource else None,
        "resource_name": resource,
        "permission_id": permission,
        "allowed": allowed,
    }
    row.update(extra)
    return row


class TestGroupAdjacent:
    def test_merges_runs(self) -> None:
        rows = [{"id": 1, "r": "a"}, {"id": 1, "r": "b"}, {"id": 2, "r": "c"}]
        assert group_adjacent(rows, "id", ["r"]) == [{"id": 1, "r": ["a", "b"]}, {"id": 2, "r": ["c"]}]

    def test_does_not_mutate_input(self) -> None:
        rows = [{"id": 1, "r": "a"}, {"id": 1, "r": "b"}]
        group_adjacent(rows, "id", ["r"])
        assert rows == [{"id": 1, "r": "a"}, {"id": 1, "r": "b"}]

    def test_other_fields_keep_first_value(self) -> None:
        rows = [{"id": 1, "name": "first", "r": "a"}, {"id": 1, "name": "second", "r": "b"}]
        assert group_adjacent(rows, "id", ["r"])[0]["name"] == "first"

    def test_empty_input(self) -> None:
        assert group_adjacent([], "id", ["r"]) == []

    def test_non_contiguous_input_raises(self) -> None:
        rows = [{"id": 1, "r": "a"}, {"id": 2, "r": "b"}, {"id": 1, "r": "c"}]
        with pytest.raises(ValueError, match="not contiguous"):
            group_adjacent(rows, "id", ["r"])

    def test_ensure_contiguous_accepts_sorted(self) -> None:
        ensure_contiguous([{"k": 1}, {"k": 1}, {"k": 2}, {"k": 3}], "k")


class TestSubjectTree:
    def test_single_subject_two_roles(self) -> None:
        rows = [
            _row(role=10, resource="OAUTH2_role", permission=100, allowed="create"),
            _row(role=10, resource="OAUTH2_role", permission=101, allowed="select"),
            _row(role=11, resource="billing", permission=200, allowed="*"),
        ]
        [subject] = build_subject_tree(rows, SubjectType.USER)
        assert subject.login == "user1"
        assert [r.identifier for r in subject.roles] == ["role10", "role11"]
        assert subject.roles[0].resources[0].actions == ["create", "select"]
        assert flatten_grants(subject) == [("OAUTH2_role", ["create", "select"]), ("billing", ["*"])]

    def test_non_adjacent_role_rows_merge(self) -> None:
        rows = [
            _row(role=10, resource="a", permission=1, allowed="create"),
            _row(role=11, resource="b", permission=2, allowed="select"),
            _row(role=10, resource="a", permission=3, allowed="delete"),
        ]
        [subject] = build_subject_tree(rows, SubjectType.USER)
        assert len(subject.roles) == 2
        assert subject.roles[0].resources[0].actions == ["create", "delete"]

    def test_subject_without_roles(self) -> None:
        rows = [_row(role=None, resource=None, permission=None, allowed=None)]
        [subject] = build_subject_tree(rows, SubjectType.USER)
        assert subject.roles == []
        assert flatten_grants(subject) == []

    def test_deleted_role_contributes_nothing(self) -> None:
        rows = [
            _row(role=10, role_deleted=True, resource=None, permission=None, allowed=None),
            _row(role=11, resource="b", permission=2, allowed="select"),
        ]
        [subject] = build_subject_tree(rows, SubjectType.USER)
        assert [r.id for r in subject.roles] == [11]

    def test_role_without_permissions_kept(self) -> None:
        rows = [_row(role=10, resource=None, permission=None, allowed=None)]
        [subject] = build_subject_tree(rows, SubjectType.USER)
        assert subject.roles[0].resources == []

    def test_client_fields(self) -> None:
        rows = [_row(client_id="abc::client.app", access_token="$2b$hash", revoked=1)]
        [subject] = build_subject_tree(rows, SubjectType.CLIENT)
        assert subject.client_id == "abc::client.app"
        assert subject.has_long_lived_token is True
        assert subject.revoked is True

    def test_user_has_no_client_fields(self) -> None:
        [subject] = build_subject_tree([_row()], SubjectType.USER)
        assert subject.client_id is None
        assert subject.revoked is None

    def test_many_subjects(self) -> None:
        rows = [_row(subject=1), _row(subject=2), _row(subject=2, permission=101, allowed="update")]
        tree = build_subject_tree(rows, SubjectType.USER)
        assert [s.id for s in tree] == [1, 2]
        assert tree[1].roles[0].resources[0].actions == ["create", "update"]

    def test_interleaved_subjects_raise(self) -> None:
        with pytest.raises(ValueError):
            build_subject_tree([_row(subject=1), _row(subject=2), _row(subject=1)], SubjectType.USER)


class TestRoleAndResourceTrees:
    def test_role_tree(self) -> None:
        rows = [
            {"id": 1, "identifier": "admin", "resource_id": 5, "resource_name": "OAUTH2_global", "permission_id": 9, "allowed": "*"},
            {"id": 2, "identifier": "empty", "resource_id": None, "resource_name": None, "permission_id": None, "allowed": None},
        ]
        admin, empty = build_role_tree(rows)
        assert admin.resources[0].resource_name == "OAUTH2_global"
        assert admin.resources[0].actions == ["*"]
        assert empty.resources == []

    def test_resource_tree(self) -> None:
        rows = [
            {"resource_id": 1, "resource_name": "billing", "permission_id": 1, "allowed": "*"},
            {"resource_id": 1, "resource_name": "billing", "permission_id": 2, "allowed": "create"},
            {"resource_id": 2, "resource_name": "bare", "permission_id": None, "allowed": None},
        ]
        billing, bare = build_resource_tree(rows)
        assert billing.actions == ["*", "create"]
        assert [p.id for p in billing.permissions] == [1, 2]
        assert bare.permissions == []
