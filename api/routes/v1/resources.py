"""
api/routes/v1/resources.py -- Resource and permission REST endpoints.

Routes (all under /api/v1):
  POST   /auth/resource                             -- create + 5 permissions  OAUTH2_resource:create
  GET    /auth/resource                             -- list (paged)            OAUTH2_resource:select
  PUT    /auth/resource/{resource_id}/permission    -- replace action set      OAUTH2_resource:update
  DELETE /auth/resource/{resource_id}               -- soft delete             OAUTH2_resource:delete
  POST   /auth/permission                           -- add one action          OAUTH2_permission:create
"""

from __future__ import annotations

from fastapi import Query, Request

from api.models import (
    ApiResponse,
    PageOut,
    PermissionCreate,
    PermissionCreated,
    ResourceActions,
    ResourceCreate,
    ResourceOut,
)
from api.secured import SecuredRouter
from auth.errors import NotFoundError
from auth.store import IdentityStore

RESOURCE_NOT_FOUND = 404400

router = SecuredRouter(prefix="/auth", tags=["Resources"])


def _store(request: Request) -> IdentityStore:
    return request.app.state.store


@router.post("/resource", "OAUTH2_resource:create", status_code=201)
def create_resource(request: Request, body: ResourceCreate) -> ApiResponse:
    resource = _store(request).create_resource(body.resource_name, body.application_id)
    return ApiResponse(message=f"Resource {resource.resource_name} created", content=ResourceOut.from_node(resource))


@router.get("/resource", "OAUTH2_resource:select")
def list_resources(
    request: Request,
    page_index: int = Query(0, ge=0),
    items_per_page: int = Query(5, ge=1, le=100),
) -> ApiResponse:
    page = _store(request).list_resources(page_index, items_per_page)
    return ApiResponse(content=PageOut.from_page(page, ResourceOut.from_node))


@router.put("/resource/{resource_id}/permission", "OAUTH2_resource:update")
def update_resource_permissions(request: Request, resource_id: int, body: ResourceActions) -> ApiResponse:
    resource = _store(request).update_resource_permissions(resource_id, body.actions)
    return ApiResponse(message="Resource permissions updated", content=ResourceOut.from_node(resource))


@router.delete("/resource/{resource_id}", "OAUTH2_resource:delete")
def delete_resource(request: Request, resource_id: int) -> ApiResponse:
    if not _store(request).delete_resource(resource_id):
        raise NotFoundError("Resource not found", RESOURCE_NOT_FOUND)
    return ApiResponse(message="Resource deleted")


@router.post("/permission", "OAUTH2_permission:create", status_code=201)
def create_permission(request: Request, body: PermissionCreate) -> ApiResponse:
    permission = _store(request).create_permission(body.resource_id, body.allowed)
    return ApiResponse(
        message="Permission created",
        content=PermissionCreated(id=permission.id, resource_id=permission.resource_id, allowed=permission.allowed),
    )
