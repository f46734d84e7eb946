"""
api/routes/v1/roles.py -- Role management REST endpoints.

Routes (all under /api/v1):
  POST   /auth/role                         -- create role            OAUTH2_role:create
  GET    /auth/role                         -- list roles (paged)     OAUTH2_role:select
  GET    /auth/role/{role_id}               -- one role               OAUTH2_role:select
  PUT    /auth/role/{role_id}/permission    -- replace permissions    OAUTH2_role:update
  DELETE /auth/role/{role_id}               -- soft delete            OAUTH2_role:delete
"""

from __future__ import annotations

from fastapi import Query, Request

from api.models import ApiResponse, PageOut, PermissionAssignment, RoleCreate, RoleOut
from api.secured import SecuredRouter
from auth.errors import NotFoundError
from auth.store import IdentityStore

ROLE_NOT_FOUND = 404300

router = SecuredRouter(prefix="/auth", tags=["Roles"])


def _store(request: Request) -> IdentityStore:
    return request.app.state.store


@router.post("/role", "OAUTH2_role:create", status_code=201)
def create_role(request: Request, body: RoleCreate) -> ApiResponse:
    role = _store(request).create_role(body.identifier, body.permission_ids)
    return ApiResponse(message=f"Role {role.identifier} created", content=RoleOut.from_node(role))


@router.get("/role", "OAUTH2_role:select")
def list_roles(
    request: Request,
    page_index: int = Query(0, ge=0),
    items_per_page: int = Query(5, ge=1, le=100),
) -> ApiResponse:
    page = _store(request).list_roles(page_index, items_per_page)
    return ApiResponse(content=PageOut.from_page(page, RoleOut.from_node))


@router.get("/role/{role_id}", "OAUTH2_role:select")
def get_role(request: Request, role_id: int) -> ApiResponse:
    role = _store(request).get_role(role_id)
    if role is None:
        raise NotFoundError("Role not found", ROLE_NOT_FOUND)
    return ApiResponse(content=RoleOut.from_node(role))


@router.put("/role/{role_id}/permission", "OAUTH2_role:update")
def update_role_permissions(request: Request, role_id: int, body: PermissionAssignment) -> ApiResponse:
    role = _store(request).update_role_permissions(role_id, body.permission_ids)
    return ApiResponse(message="Role permissions updated", content=RoleOut.from_node(role))


@router.delete("/role/{role_id}", "OAUTH2_role:delete")
def delete_role(request: Request, role_id: int) -> ApiResponse:
    if not _store(request).delete_role(role_id):
        raise NotFoundError("Role not found", ROLE_NOT_FOUND)
    return ApiResponse(message="Role deleted")
