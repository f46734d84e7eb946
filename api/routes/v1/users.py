"""
api/routes/v1/users.py -- User management REST endpoints.

Routes (all under /api/v1):
  POST   /auth/user                           -- create user          OAUTH2_user:create
  GET    /auth/user                           -- list users (paged)   OAUTH2_user:select
  GET    /auth/user/profile/me                -- caller's own tree    public, token required
  GET    /auth/user/{subject_id}              -- one user             OAUTH2_user:select
  PUT    /auth/user/{subject_id}              -- name/description     OAUTH2_user:update
  PUT    /auth/user/{subject_id}/password     -- set password         OAUTH2_user:update
  PUT    /auth/user/{subject_id}/role         -- replace roles        OAUTH2_user:update
  DELETE /auth/user/{subject_id}              -- soft delete          OAUTH2_user:delete

Users and clients are addressed by their subject id, the id carried in tokens.
"""

from __future__ import annotations

import logging

from fastapi import Query, Request

from api.models import (
    ApiResponse,
    PageOut,
    PasswordChange,
    RoleAssignment,
    SubjectOut,
    SubjectUpdate,
    UserCreate,
)
from api.secured import SecuredRouter
from auth.dependencies import require_principal
from auth.errors import NotFoundError
from auth.models import SubjectType
from auth.registry import PUBLIC
from auth.store import IdentityStore
from auth.tokens import hash_password

logger = logging.getLogger("gatehouse.api.users")

USER_NOT_FOUND = 404100

router = SecuredRouter(prefix="/auth", tags=["Users"])


def _store(request: Request) -> IdentityStore:
    return request.app.state.store


def _user_out(store: IdentityStore, subject_id: int) -> SubjectOut:
    node = store.get_subject_tree(SubjectType.USER, subject_id)
    if node is None:
        raise NotFoundError("User not found", USER_NOT_FOUND)
    return SubjectOut.from_node(node)


@router.post("/user", "OAUTH2_user:create", status_code=201)
def create_user(request: Request, body: UserCreate) -> ApiResponse:
    store = _store(request)
    user = store.create_user(
        username=body.username,
        password_hash=hash_password(body.password),
        name=body.name,
        role_ids=body.role_ids,
        description=body.description,
    )
    logger.info("Created user %s (subject %d)", user.username, user.subject_id)
    return ApiResponse(message=f"User {user.username} created", content=_user_out(store, user.subject_id))


@router.get("/user", "OAUTH2_user:select")
def list_users(
    request: Request,
    page_index: int = Query(0, ge=0),
    items_per_page: int = Query(5, ge=1, le=100),
) -> ApiResponse:
    page = _store(request).list_subjects(SubjectType.USER, page_index, items_per_page)
    return ApiResponse(content=PageOut.from_page(page, SubjectOut.from_node))


@router.get("/user/profile/me", PUBLIC)
def get_me(request: Request) -> ApiResponse:
    """The caller's own subject tree. Works for users and clients alike."""
    principal = require_principal(request)
    node = _store(request).get_subject_tree(principal.subject_type, principal.subject_id)
    if node is None:
        raise NotFoundError("Subject not found", USER_NOT_FOUND)
    return ApiResponse(content=SubjectOut.from_node(node))


@router.get("/user/{subject_id}", "OAUTH2_user:select")
def get_user(request: Request, subject_id: int) -> ApiResponse:
    return ApiResponse(content=_user_out(_store(request), subject_id))


@router.put("/user/{subject_id}", "OAUTH2_user:update")
def update_user(request: Request, subject_id: int, body: SubjectUpdate) -> ApiResponse:
    store = _store(request)
    if store.get_user(subject_id) is None or not store.update_subject(subject_id, body.name, body.description):
        raise NotFoundError("User not found", USER_NOT_FOUND)
    return ApiResponse(message="User updated", content=_user_out(store, subject_id))


@router.put("/user/{subject_id}/password", "OAUTH2_user:update")
def change_password(request: Request, subject_id: int, body: PasswordChange) -> ApiResponse:
    if not _store(request).update_password(subject_id, hash_password(body.password)):
        raise NotFoundError("User not found", USER_NOT_FOUND)
    logger.info("Password changed for subject %d", subject_id)
    return ApiResponse(message="Password updated")


@router.put("/user/{subject_id}/role", "OAUTH2_user:update")
def update_user_roles(request: Request, subject_id: int, body: RoleAssignment) -> ApiResponse:
    store = _store(request)
    user = store.get_user(subject_id)
    if user is None or not user.is_active:
        raise NotFoundError("User not found", USER_NOT_FOUND)
    store.update_subject_roles(subject_id, body.role_ids)
    return ApiResponse(message="Roles updated", content=_user_out(store, subject_id))


@router.delete("/user/{subject_id}", "OAUTH2_user:delete")
def delete_user(request: Request, subject_id: int) -> ApiResponse:
    if not _store(request).delete_subject(SubjectType.USER, subject_id):
        raise NotFoundError("User not found", USER_NOT_FOUND)
    logger.info("Deleted user subject %d", subject_id)
    return ApiResponse(message="User deleted")
