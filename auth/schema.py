"""
auth/schema.py -- Table definitions and the expected-schema descriptor.

The tables here are the single source of truth for both the store's queries
and the bootstrap audit: EXPECTED_SCHEMA is derived from them once at import,
so adding a column automatically makes older databases fail the audit and get
rebuilt.

Timestamps are ISO 8601 strings (String(32)), same as every other table in
this project. Soft-delete is a NOT NULL boolean defaulting to false.

Uniqueness of (resource_id, allowed) among non-deleted permissions is enforced
in code (IdentityStore.create_permission) because a soft-deleted duplicate
must not block re-creation.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    false,
)

metadata = MetaData()

# Every resource is created with exactly these permissions.
STANDARD_ACTIONS: tuple[str, ...] = ("*", "create", "update", "delete", "select")


def _deleted() -> Column:
    return Column("deleted", Boolean, nullable=False, default=False, server_default=false())


def _timestamps() -> list[Column]:
    return [
        Column("created_at", String(32), nullable=False),
        Column("updated_at", String(32), nullable=False),
    ]


# ---------------------------------------------------------------------------
# Tables (declared in creation order)
# ---------------------------------------------------------------------------

applications = Table(
    "oauth2_applications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(100), nullable=False, unique=True),
    _deleted(),
    *_timestamps(),
)

resources = Table(
    "oauth2_resources",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("resource_name", String(100), nullable=False, unique=True),
    Column("application_id", Integer, ForeignKey("oauth2_applications.id"), nullable=False),
    _deleted(),
    *_timestamps(),
)

subjects = Table(
    "oauth2_subjects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(45), nullable=False),
    Column("description", String(255)),
    _deleted(),
    *_timestamps(),
)

users = Table(
    "oauth2_users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(45), nullable=False, unique=True),
    Column("password", String(75), nullable=False),  # bcrypt hash
    Column("subject_id", Integer, ForeignKey("oauth2_subjects.id"), nullable=False),
    _deleted(),
    *_timestamps(),
)

clients = Table(
    "oauth2_clients",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(100), nullable=False, unique=True),
    Column("client_id", String(60), nullable=False, unique=True),
    Column("client_secret", String(255), nullable=False),  # ivHex|.|cipherHex
    Column("access_token", String(255)),  # bcrypt hash of the long-lived token
    Column("revoked", Boolean, nullable=False, default=False, server_default=false()),
    Column("subject_id", Integer, ForeignKey("oauth2_subjects.id"), nullable=False),
    _deleted(),
    *_timestamps(),
)

permissions = Table(
    "oauth2_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("allowed", String(75), nullable=False),
    Column("resource_id", Integer, ForeignKey("oauth2_resources.id"), nullable=False),
    _deleted(),
    *_timestamps(),
)

roles = Table(
    "oauth2_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(100), nullable=False, unique=True),
    _deleted(),
    *_timestamps(),
)

subject_roles = Table(
    "oauth2_subject_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subject_id", Integer, ForeignKey("oauth2_subjects.id"), nullable=False),
    Column("role_id", Integer, ForeignKey("oauth2_roles.id"), nullable=False),
    *_timestamps(),
    UniqueConstraint("subject_id", "role_id"),
)

role_permissions = Table(
    "oauth2_role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("oauth2_roles.id"), nullable=False),
    Column("permission_id", Integer, ForeignKey("oauth2_permissions.id"), nullable=False),
    *_timestamps(),
    UniqueConstraint("role_id", "permission_id"),
)

# Drop order is the reverse.
TABLE_CREATION_ORDER: tuple[Table, ...] = (
    applications,
    resources,
    subjects,
    users,
    clients,
    permissions,
    roles,
    subject_roles,
    role_permissions,
)


# ---------------------------------------------------------------------------
# Expected-schema descriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnSpec:
    """What the audit compares: a coarse type family, length and nullability.

    Type families rather than exact SQL types so that reflection differences
    between dialects (VARCHAR vs. CHARACTER VARYING, BOOLEAN vs. TINYINT)
    do not trigger a rebuild.
    """

    type: str
    max_length: int | None
    nullable: bool


def describe_type(sql_type) -> tuple[str, int | None]:
    """Map a SQLAlchemy type (declared or reflected) to (family, length)."""
    # Several dialects reflect BOOLEAN columns back as small integers.
    if isinstance(sql_type, (Boolean, Integer)):
        return "integer", None
    if isinstance(sql_type, Text):
        return "text", None
    if isinstance(sql_type, String):
        return "string", sql_type.length
    return type(sql_type).__name__.lower(), None


def describe_column(column) -> ColumnSpec:
    family, length = describe_type(column.type)
    return ColumnSpec(type=family, max_length=length, nullable=bool(column.nullable))


def _build_expected() -> dict[str, dict[str, ColumnSpec]]:
    return {table.name: {column.name: describe_column(column) for column in table.columns} for table in TABLE_CREATION_ORDER}


EXPECTED_SCHEMA: dict[str, dict[str, ColumnSpec]] = _build_expected()
