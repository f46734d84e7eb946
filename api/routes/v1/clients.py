"""
api/routes/v1/clients.py -- Client management and client credential endpoints.

Routes (all under /api/v1):
  POST   /auth/client                          -- create (?long_live=true)   OAUTH2_client:create
  GET    /auth/client                          -- list clients (paged)       OAUTH2_client:select
  GET    /auth/client/{subject_id}             -- one client                 OAUTH2_client:select
  PUT    /auth/client/{subject_id}             -- name/description           OAUTH2_client:update
  PUT    /auth/client/{subject_id}/role        -- replace roles              OAUTH2_client:update
  DELETE /auth/client/{subject_id}             -- soft delete                OAUTH2_client:delete
  POST   /auth/client/{subject_id}/long-live   -- issue / remove long-lived  OAUTH2_client:update
  PUT    /auth/client/{subject_id}/revoke      -- set / clear revoked        OAUTH2_client:update
  GET    /auth/client/{subject_id}/secret      -- decrypt stored secret      OAUTH2_client:select

Security:
  The generated client secret and any long-lived token appear in exactly one
  response each; only the encrypted secret and the token hash are stored.
  Cache-Control: no-store on every response that carries a credential.
"""

from __future__ import annotations

import logging

from fastapi import Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    ApiResponse,
    ClientCreate,
    ClientCreated,
    LongLivedToken,
    PageOut,
    RevokeRequest,
    RoleAssignment,
    SubjectOut,
    SubjectUpdate,
)
from api.secured import SecuredRouter
from auth.errors import NotFoundError
from auth.grants import CLIENT_NOT_FOUND, TokenIssuer
from auth.models import SubjectType
from auth.store import IdentityStore

logger = logging.getLogger("gatehouse.api.clients")

router = SecuredRouter(prefix="/auth", tags=["Clients"])


def _store(request: Request) -> IdentityStore:
    return request.app.state.store


def _issuer(request: Request) -> TokenIssuer:
    return request.app.state.issuer


def _client_out(store: IdentityStore, subject_id: int) -> SubjectOut:
    node = store.get_subject_tree(SubjectType.CLIENT, subject_id)
    if node is None:
        raise NotFoundError("Client not found", CLIENT_NOT_FOUND)
    return SubjectOut.from_node(node)


def _no_store(payload: ApiResponse, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/client", "OAUTH2_client:create", status_code=201)
def create_client(request: Request, body: ClientCreate, long_live: bool = Query(False)) -> JSONResponse:
    provisioned = _issuer(request).provision_client(
        identifier=body.identifier,
        name=body.name,
        role_ids=body.role_ids,
        description=body.description,
        long_live=long_live,
    )
    client = provisioned.client
    logger.info("Created client %s (subject %d)", client.identifier, client.subject_id)
    content = ClientCreated(
        subject_id=client.subject_id,
        identifier=client.identifier,
        client_id=client.client_id,
        client_secret=provisioned.client_secret,
        long_lived_token=provisioned.long_lived_token,
    )
    return _no_store(ApiResponse(message=f"Client {client.identifier} created", content=content), status_code=201)


@router.get("/client", "OAUTH2_client:select")
def list_clients(
    request: Request,
    page_index: int = Query(0, ge=0),
    items_per_page: int = Query(5, ge=1, le=100),
) -> ApiResponse:
    page = _store(request).list_subjects(SubjectType.CLIENT, page_index, items_per_page)
    return ApiResponse(content=PageOut.from_page(page, SubjectOut.from_node))


@router.get("/client/{subject_id}", "OAUTH2_client:select")
def get_client(request: Request, subject_id: int) -> ApiResponse:
    return ApiResponse(content=_client_out(_store(request), subject_id))


@router.put("/client/{subject_id}", "OAUTH2_client:update")
def update_client(request: Request, subject_id: int, body: SubjectUpdate) -> ApiResponse:
    store = _store(request)
    if store.get_client(subject_id) is None or not store.update_subject(subject_id, body.name, body.description):
        raise NotFoundError("Client not found", CLIENT_NOT_FOUND)
    return ApiResponse(message="Client updated", content=_client_out(store, subject_id))


@router.put("/client/{subject_id}/role", "OAUTH2_client:update")
def update_client_roles(request: Request, subject_id: int, body: RoleAssignment) -> ApiResponse:
    store = _store(request)
    client = store.get_client(subject_id)
    if client is None or not client.is_active:
        raise NotFoundError("Client not found", CLIENT_NOT_FOUND)
    store.update_subject_roles(subject_id, body.role_ids)
    return ApiResponse(message="Roles updated", content=_client_out(store, subject_id))


@router.delete("/client/{subject_id}", "OAUTH2_client:delete")
def delete_client(request: Request, subject_id: int) -> ApiResponse:
    if not _store(request).delete_subject(SubjectType.CLIENT, subject_id):
        raise NotFoundError("Client not found", CLIENT_NOT_FOUND)
    logger.info("Deleted client subject %d", subject_id)
    return ApiResponse(message="Client deleted")


@router.post("/client/{subject_id}/long-live", "OAUTH2_client:update")
def long_lived_token(
    request: Request, subject_id: int, remove_long_live: bool = Query(False)
) -> JSONResponse:
    """Issue a long-lived token (replacing any previous one) or, with remove_long_live, drop it."""
    issuer = _issuer(request)
    if remove_long_live:
        issuer.remove_long_lived(subject_id)
        return _no_store(ApiResponse(message="Long-lived token removed", content=LongLivedToken(access_token=None)))
    token = issuer.issue_long_lived(subject_id)
    return _no_store(ApiResponse(message="Long-lived token issued", content=LongLivedToken(access_token=token)))


@router.put("/client/{subject_id}/revoke", "OAUTH2_client:update")
def revoke_client(request: Request, subject_id: int, body: RevokeRequest) -> ApiResponse:
    _issuer(request).set_revoked(subject_id, body.revoked)
    return ApiResponse(message="Client revoked" if body.revoked else "Client reinstated")


@router.get("/client/{subject_id}/secret", "OAUTH2_client:select")
def read_client_secret(request: Request, subject_id: int) -> JSONResponse:
    secret = _issuer(request).reveal_secret(subject_id)
    return _no_store(ApiResponse(content={"client_secret": secret}))
