"""
api/routes/v1/applications.py -- Application namespace endpoints.

Routes (all under /api/v1):
  POST /auth/application   -- create application   OAUTH2_application:create
  GET  /auth/application   -- list applications    OAUTH2_application:select
"""

from __future__ import annotations

from fastapi import Request

from api.models import ApiResponse, ApplicationCreate, ApplicationOut
from api.secured import SecuredRouter

router = SecuredRouter(prefix="/auth", tags=["Applications"])


@router.post("/application", "OAUTH2_application:create", status_code=201)
def create_application(request: Request, body: ApplicationCreate) -> ApiResponse:
    app = request.app.state.store.create_application(body.identifier)
    return ApiResponse(
        message=f"Application {app.identifier} created",
        content=ApplicationOut(id=app.id, identifier=app.identifier, created_at=app.created_at),
    )


@router.get("/application", "OAUTH2_application:select")
def list_applications(request: Request) -> ApiResponse:
    apps = request.app.state.store.list_applications()
    return ApiResponse(content=[ApplicationOut(id=a.id, identifier=a.identifier, created_at=a.created_at) for a in apps])
