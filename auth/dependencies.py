"""
auth/dependencies.py -- Identity decoding and the guard dependency for FastAPI.

Two steps run on every request:
  1. decode_identity() -- called by the identity middleware in api/main.py.
     Reads the presented token, verifies it and leaves the outcome on
     request.state (principal, token, token_error). Never rejects: a public
     route must still work with a stale token attached.
  2. require_permission() -- router-level dependency on every secured route.
     Asks the PermissionGuard for a decision and raises the decision's error
     when the request is rejected; the AuthError handler renders it.

Token sources, in priority order:
  1. Authorization header, scheme "Bearer" (or the legacy "AK"), any case.
  2. access_token query parameter.

Layer rule: no imports from core/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AuthenticationError, TokenError
from auth.guard import PermissionGuard
from auth.models import Principal
from auth.tokens import verify_token

_TOKEN_SCHEMES = ("bearer", "ak")


def read_bearer_token(request: Request) -> str | None:
    """Return the raw token the caller presented, or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() in _TOKEN_SCHEMES and credentials.strip():
        return credentials.strip()
    return request.query_params.get("access_token") or None


def decode_identity(request: Request, secret: str) -> None:
    """Populate request.state.principal / token / token_error."""
    token = read_bearer_token(request)
    request.state.token = token
    request.state.principal = None
    request.state.token_error = None
    if token is None:
        return
    try:
        request.state.principal = verify_token(token, secret)
    except TokenError as exc:
        request.state.token_error = exc


def get_principal(request: Request) -> Principal | None:
    """The verified principal of this request, or None when anonymous."""
    return getattr(request.state, "principal", None)


def require_principal(request: Request) -> Principal:
    """For handlers that act on the caller itself (e.g. /me)."""
    principal = get_principal(request)
    if principal is None:
        raise getattr(request.state, "token_error", None) or AuthenticationError()
    return principal


def require_permission(request: Request) -> None:
    """Router-level dependency: evaluate the guard for this request.

    Use on a router:
        APIRouter(dependencies=[Depends(require_permission)])
    """
    guard: PermissionGuard = request.app.state.guard
    decision = guard.evaluate(
        method=request.method,
        path=request.url.path,
        path_params=request.path_params,
        principal=get_principal(request),
        presented_token=getattr(request.state, "token", None),
        token_error=getattr(request.state, "token_error", None),
    )
    if not decision.allowed:
        raise decision.error
