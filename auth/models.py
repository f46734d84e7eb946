"""
auth/models.py -- Domain dataclasses for identity and permission entities.

Pattern: Data class (pure data container, zero logic). Stores build these from
rows; the guard and routes consume them.

Two families live here:
  Entities    -- flat records the store hands back (Application, Permission,
                 User, Client). User and Client are the two concrete Subject
                 variants; the store returns one or the other, so
                 subject-type dispatch happens once, at the data boundary.
  Trees       -- the nested shapes produced by auth.denormalize from flat join
                 rows (SubjectNode -> RoleNode -> ResourceNode -> PermissionNode).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SubjectType(str, Enum):
    USER = "user"
    CLIENT = "client"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class Application:
    identifier: str
    id: int | None = None
    deleted: bool = False
    created_at: str | None = None


@dataclass
class Permission:
    resource_id: int
    allowed: str  # concrete verb or "*"
    id: int | None = None
    deleted: bool = False


@dataclass
class User:
    """A Subject that logs in with username + password.

    subject_deleted mirrors the shared subject row; either flag set means the
    user must not authenticate or be granted anything.
    """

    username: str
    subject_id: int
    hashed_password: str
    id: int | None = None
    name: str = ""
    description: str | None = None
    deleted: bool = False
    subject_deleted: bool = False

    @property
    def is_active(self) -> bool:
        return not (self.deleted or self.subject_deleted)


@dataclass
class Client:
    """A Subject that authenticates with client_id + client_secret.

    client_secret is the encrypted form (ivHex|.|cipherHex), never plaintext.
    access_token is the bcrypt hash of the long-lived token, or None when the
    client uses short-lived tokens only.
    """

    identifier: str
    subject_id: int
    client_id: str
    client_secret: str
    id: int | None = None
    access_token: str | None = None
    revoked: bool = False
    name: str = ""
    description: str | None = None
    deleted: bool = False
    subject_deleted: bool = False

    @property
    def is_active(self) -> bool:
        return not (self.deleted or self.subject_deleted)

    @property
    def has_long_lived_token(self) -> bool:
        return self.access_token is not None


@dataclass(frozen=True)
class Principal:
    """The authenticated subject decoded from a verified token.

    name is the identifying name: username for users, identifier for clients.
    """

    subject_id: int
    subject_type: SubjectType
    name: str


# ---------------------------------------------------------------------------
# Trees
# ---------------------------------------------------------------------------


@dataclass
class PermissionNode:
    id: int | None
    allowed: str


@dataclass
class ResourceNode:
    id: int | None
    resource_name: str
    permissions: list[PermissionNode] = field(default_factory=list)

    @property
    def actions(self) -> list[str]:
        return [p.allowed for p in self.permissions]


@dataclass
class RoleNode:
    id: int
    identifier: str
    resources: list[ResourceNode] = field(default_factory=list)


@dataclass
class SubjectNode:
    """One subject with its resolved roles.

    id is the concrete row id (users.id or clients.id); login is the username
    or the client identifier. Client-only fields stay None for users.
    """

    id: int
    subject_id: int
    subject_type: SubjectType
    login: str
    name: str
    description: str | None = None
    roles: list[RoleNode] = field(default_factory=list)
    client_id: str | None = None
    has_long_lived_token: bool | None = None
    revoked: bool | None = None


@dataclass
class Page:
    """One page of a listing. total_pages is 0 for an empty listing."""

    items: list
    page_index: int
    items_per_page: int
    total_items: int

    @property
    def total_pages(self) -> int:
        if self.items_per_page <= 0:
            return 0
        return -(-self.total_items // self.items_per_page)
