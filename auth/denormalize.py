"""
auth/denormalize.py -- Collapse flat join rows into nested trees.

The store answers "what can this subject do" with one outer-joined query:
subject x role x permission x resource, one row per permission. These pure
functions turn that result back into the nested shape the guard and the
listing routes consume.

Ordering contract: rows must arrive grouped by the outermost key (the store
orders by it). Inner levels do not need to be adjacent; they are merged by
linear search, first occurrence wins.

Layer rule: pure functions, no I/O. No imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from auth.models import PermissionNode, ResourceNode, RoleNode, SubjectNode, SubjectType

# ---------------------------------------------------------------------------
# Adjacent grouping
# ---------------------------------------------------------------------------


def ensure_contiguous(rows: Sequence[Mapping], key: str) -> None:
    """Raise ValueError if a value of `key` reappears after a different value.

    group_adjacent would silently split such a group in two, so the
    precondition is checked rather than trusted.
    """
    seen: set = set()
    previous = object()
    for index, row in enumerate(rows):
        current = row[key]
        if current != previous:
            if current in seen:
                raise ValueError(f"rows are not contiguous by {key!r}: {current!r} reappears at row {index}")
            seen.add(current)
            previous = current


def group_adjacent(rows: Sequence[Mapping], key: str, fields: Iterable[str]) -> list[dict]:
    """Merge runs of rows sharing `key` into one dict per run.

    Each listed field becomes a list of that field's values across the run;
    every other field keeps the value from the run's first row. Input rows are
    never mutated.

    >>> group_adjacent([{"id": 1, "r": "a"}, {"id": 1, "r": "b"}, {"id": 2, "r": "c"}], "id", ["r"])
    [{'id': 1, 'r': ['a', 'b']}, {'id': 2, 'r': ['c']}]
    """
    fields = list(fields)
    ensure_contiguous(rows, key)

    grouped: list[dict] = []
    for row in rows:
        if grouped and grouped[-1][key] == row[key]:
            current = grouped[-1]
            for name in fields:
                current[name].append(row[name])
            continue
        current = dict(row)
        for name in fields:
            current[name] = [row[name]]
        grouped.append(current)
    return grouped


# ---------------------------------------------------------------------------
# Trees
# ---------------------------------------------------------------------------


def _merge_grant(resources: list[ResourceNode], row: Mapping) -> None:
    """Fold one (resource, permission) pair into a resource list."""
    if row.get("resource_name") is None:
        return
    resource = next((r for r in resources if r.resource_name == row["resource_name"]), None)
    if resource is None:
        resource = ResourceNode(id=row.get("resource_id"), resource_name=row["resource_name"])
        resources.append(resource)
    if row.get("allowed") is not None:
        resource.permissions.append(PermissionNode(id=row.get("permission_id"), allowed=row["allowed"]))


def build_subject_tree(rows: Sequence[Mapping], subject_type: SubjectType) -> list[SubjectNode]:
    """Build subject -> role -> resource -> permission trees.

    Expected row keys: id, subject_id, name, description, login, role_id,
    role_identifier, role_deleted, resource_id, resource_name, permission_id,
    allowed; client rows also carry client_id, access_token and revoked.

    A row with role_id None (subject without roles, outer join) yields the
    subject alone. Rows of a deleted role are consumed but add nothing.
    """
    ensure_contiguous(rows, "id")

    subjects: list[SubjectNode] = []
    for row in rows:
        if not subjects or subjects[-1].id != row["id"]:
            node = SubjectNode(
                id=row["id"],
                subject_id=row["subject_id"],
                subject_type=subject_type,
                login=row["login"],
                name=row["name"],
                description=row.get("description"),
            )
            if subject_type is SubjectType.CLIENT:
                node.client_id = row.get("client_id")
                node.has_long_lived_token = row.get("access_token") is not None
                node.revoked = bool(row.get("revoked"))
            subjects.append(node)
        subject = subjects[-1]

        if row.get("role_id") is None or row.get("role_deleted"):
            continue
        role = next((r for r in subject.roles if r.id == row["role_id"]), None)
        if role is None:
            role = RoleNode(id=row["role_id"], identifier=row["role_identifier"])
            subject.roles.append(role)
        _merge_grant(role.resources, row)
    return subjects


def build_role_tree(rows: Sequence[Mapping]) -> list[RoleNode]:
    """Build role -> resource -> permission trees from role listing rows.

    Expected row keys: id, identifier, resource_id, resource_name,
    permission_id, allowed. A role without permissions keeps an empty
    resource list.
    """
    ensure_contiguous(rows, "id")

    roles: list[RoleNode] = []
    for row in rows:
        if not roles or roles[-1].id != row["id"]:
            roles.append(RoleNode(id=row["id"], identifier=row["identifier"]))
        _merge_grant(roles[-1].resources, row)
    return roles


def build_resource_tree(rows: Sequence[Mapping]) -> list[ResourceNode]:
    """Collapse resource x permission rows into one ResourceNode per resource."""
    ensure_contiguous(rows, "resource_id")

    resources: list[ResourceNode] = []
    for row in rows:
        if not resources or resources[-1].id != row["resource_id"]:
            resources.append(ResourceNode(id=row["resource_id"], resource_name=row["resource_name"]))
        if row.get("allowed") is not None:
            resources[-1].permissions.append(PermissionNode(id=row.get("permission_id"), allowed=row["allowed"]))
    return resources


def flatten_grants(subject: SubjectNode) -> list[tuple[str, list[str]]]:
    """The (resource name, actions) pairs a subject holds across all its roles."""
    return [(resource.resource_name, resource.actions) for role in subject.roles for resource in role.resources]
