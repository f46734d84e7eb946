"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Envelope: every successful response is ApiResponse {code, message, content};
every error is ErrorResponse {"error": {code, message}}. Codes are the numeric
codes of auth/errors.py (200000 on success).

Password fields are capped at 72 UTF-8 bytes, the bcrypt input limit, and are
never whitespace-stripped: what is stored is exactly what must be sent to log in.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.errors import SUCCESS_CODE
from auth.models import Page, ResourceNode, RoleNode, SubjectNode, SubjectType

BCRYPT_MAX_BYTES = 72


def _check_password_bytes(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    return value


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel):
    """Success envelope. content is endpoint-specific."""

    code: int = SUCCESS_CODE
    message: str = "OK"
    content: Any = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: int
    message: str


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


class TokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/token.

    grant_type "password" needs username + password; "client_credentials"
    needs client_id + client_secret. Any other grant type is rejected by the
    route with 400002, not by validation, so the error code is specific.
    """

    grant_type: str = Field(min_length=1, max_length=40)
    username: Optional[str] = Field(default=None, max_length=45)
    password: Optional[str] = None
    client_id: Optional[str] = Field(default=None, max_length=60)
    client_secret: Optional[str] = Field(default=None, max_length=255)

    @field_validator("grant_type", "username", "client_id", mode="before")
    @classmethod
    def strip_names(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


class TokenContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: Optional[int]
    subject_id: int
    subject_type: SubjectType
    name: str
    roles: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Subjects
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/user."""

    username: str = Field(min_length=1, max_length=45, pattern=r"^[A-Za-z0-9_.@-]+$")
    password: str = Field(min_length=8)
    name: str = Field(min_length=1, max_length=45)
    description: Optional[str] = Field(default=None, max_length=255)
    role_ids: list[int]

    @field_validator("username", "name", "description", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class ClientCreate(BaseModel):
    """Request body for POST /api/v1/auth/client."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.@-]+$")
    name: str = Field(min_length=1, max_length=45)
    description: Optional[str] = Field(default=None, max_length=255)
    role_ids: list[int]


class SubjectUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/{user|client}/{subject_id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=45)
    description: Optional[str] = Field(default=None, max_length=255)


class PasswordChange(BaseModel):
    password: str = Field(min_length=8)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class RoleAssignment(BaseModel):
    role_ids: list[int]


class RevokeRequest(BaseModel):
    revoked: bool = True


class PermissionOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    allowed: str


class ResourceOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    resource_name: str
    permissions: list[PermissionOut] = Field(default_factory=list)

    @classmethod
    def from_node(cls, node: ResourceNode) -> "ResourceOut":
        return cls.model_validate(dataclasses.asdict(node))


class RoleOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    identifier: str
    resources: list[ResourceOut] = Field(default_factory=list)

    @classmethod
    def from_node(cls, node: RoleNode) -> "RoleOut":
        return cls.model_validate(dataclasses.asdict(node))


class SubjectOut(BaseModel):
    """One user or client with its role tree. Client-only fields are None for users."""

    model_config = ConfigDict(frozen=True)

    id: int
    subject_id: int
    subject_type: SubjectType
    login: str
    name: str
    description: Optional[str] = None
    roles: list[RoleOut] = Field(default_factory=list)
    client_id: Optional[str] = None
    has_long_lived_token: Optional[bool] = None
    revoked: Optional[bool] = None

    @classmethod
    def from_node(cls, node: SubjectNode) -> "SubjectOut":
        return cls.model_validate(dataclasses.asdict(node))


class ClientCreated(BaseModel):
    """Response content for client creation. The secret and token are shown exactly once."""

    model_config = ConfigDict(frozen=True)

    subject_id: int
    identifier: str
    client_id: str
    client_secret: str
    long_lived_token: Optional[str] = None


class LongLivedToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: Optional[str]


class PageOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[Any]
    page_index: int
    items_per_page: int
    total_items: int
    total_pages: int

    @classmethod
    def from_page(cls, page: Page, convert) -> "PageOut":
        return cls(
            items=[convert(item) for item in page.items],
            page_index=page.page_index,
            items_per_page=page.items_per_page,
            total_items=page.total_items,
            total_pages=page.total_pages,
        )


# ---------------------------------------------------------------------------
# Roles, resources, permissions, applications
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=100)
    permission_ids: list[int] = Field(default_factory=list)


class PermissionAssignment(BaseModel):
    permission_ids: list[int]


class ResourceCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    resource_name: str = Field(min_length=1, max_length=100, pattern=r"^[^:]+$")
    application_id: int


class ResourceActions(BaseModel):
    """Request body for PUT /api/v1/auth/resource/{id}/permission: the complete new action set."""

    actions: list[str] = Field(min_length=1)

    @field_validator("actions")
    @classmethod
    def check_actions(cls, values: list[str]) -> list[str]:
        """Strip, reject empties and colons, deduplicate in order."""
        result: list[str] = []
        for value in values:
            action = value.strip()
            if not action or ":" in action or len(action) > 75:
                raise ValueError(f"invalid action {value!r}")
            if action not in result:
                result.append(action)
        return result


class PermissionCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    resource_id: int
    allowed: str = Field(min_length=1, max_length=75, pattern=r"^[^:]+$")


class PermissionCreated(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    resource_id: int
    allowed: str


class ApplicationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=100)


class ApplicationOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    identifier: str
    created_at: Optional[str] = None
