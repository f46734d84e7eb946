"""
api/routes/v1/tokens.py -- Token endpoint.

Routes:
  POST /api/v1/auth/token   -- password or client_credentials grant (public)

Security:
  Rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute) on top of the
  per-login lockout in TokenIssuer.
  Cache-Control: no-store on every token response.
  Wrong username and wrong password return the same code (401200).
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import ApiResponse, TokenContent, TokenRequest
from api.secured import SecuredRouter
from auth.errors import InvalidRequestError
from auth.grants import IssuedToken, TokenIssuer
from auth.registry import PUBLIC

UNSUPPORTED_GRANT = 400002

router = SecuredRouter(prefix="/auth", tags=["Tokens"])


def _token_response(issued: IssuedToken, message: str) -> JSONResponse:
    content = TokenContent(
        access_token=issued.access_token,
        expires_in=issued.expires_in,
        subject_id=issued.principal.subject_id,
        subject_type=issued.principal.subject_type,
        name=issued.principal.name,
        roles=issued.roles,
    )
    resp = JSONResponse(content=ApiResponse(message=message, content=content).model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/token", PUBLIC)
def issue_token(request: Request, body: TokenRequest) -> JSONResponse:
    """Exchange credentials for a short-lived bearer token."""
    issuer: TokenIssuer = request.app.state.issuer

    if body.grant_type == "password":
        if not body.username or body.password is None:
            raise InvalidRequestError("username and password are required for the password grant")
        issued = issuer.issue_for_user(body.username, body.password)
        return _token_response(issued, f"User {issued.principal.name} logged in")

    if body.grant_type == "client_credentials":
        if not body.client_id or body.client_secret is None:
            raise InvalidRequestError("client_id and client_secret are required for the client_credentials grant")
        issued = issuer.issue_for_client(body.client_id, body.client_secret)
        return _token_response(issued, f"Client {issued.principal.name} authenticated")

    raise InvalidRequestError(f"Unsupported grant type {body.grant_type!r}", UNSUPPORTED_GRANT)
