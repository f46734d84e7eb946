"""
api/secured.py -- APIRouter wrapper that records a permission per route.

Every route declared through a SecuredRouter carries the guard dependency and
a permission expression. The expressions are kept on the router and copied
into the application's RouteRegistry by create_app(), which freezes the
registry once all routers are included.

    router = SecuredRouter(prefix="/auth", tags=["Roles"])

    @router.post("/role", permission="OAUTH2_role:create")
    def create_role(request: Request, body: RoleCreate) -> ApiResponse: ...

Declaring a route on the inner APIRouter directly would skip the registry and
every request to it would be rejected as unregistered (403300).
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, Depends

from auth.dependencies import require_permission
from auth.registry import RouteRegistry


class SecuredRouter:
    def __init__(self, prefix: str = "", tags: list[str] | None = None) -> None:
        self.router = APIRouter(prefix=prefix, tags=tags, dependencies=[Depends(require_permission)])
        self.expressions: list[tuple[str, str, str]] = []

    def _route(self, method: str, path: str, permission: str, **kwargs) -> Callable:
        self.expressions.append((method, self.router.prefix + path, permission))
        return self.router.api_route(path, methods=[method], **kwargs)

    def get(self, path: str, permission: str, **kwargs) -> Callable:
        return self._route("GET", path, permission, **kwargs)

    def post(self, path: str, permission: str, **kwargs) -> Callable:
        return self._route("POST", path, permission, **kwargs)

    def put(self, path: str, permission: str, **kwargs) -> Callable:
        return self._route("PUT", path, permission, **kwargs)

    def delete(self, path: str, permission: str, **kwargs) -> Callable:
        return self._route("DELETE", path, permission, **kwargs)

    def register_into(self, registry: RouteRegistry, prefix: str = "") -> None:
        """Copy this router's expressions into registry under an include prefix."""
        for method, path, permission in self.expressions:
            registry.register(method, prefix + path, permission)
