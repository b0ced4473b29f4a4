"""
api/routes/v1/api_keys.py -- API key management endpoints.

Routes:
  POST   /api/v1/api-keys        -- issue a key; the raw key is shown ONCE
  GET    /api/v1/api-keys        -- list the caller's keys (metadata only)
  DELETE /api/v1/api-keys/{id}   -- revoke (soft delete) one of the caller's keys

All three require an interactive session: an API key cannot mint or revoke
keys. IDOR guard: revoke passes the caller's user_id to the store, which
matches on (id, user_id); another user's key id behaves exactly like a
missing one (404).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse, MessageResponse
from auth.api_keys import SecretStore
from auth.dependencies import Principal, get_client_info, require_session

router = APIRouter()


def _secrets(request: Request) -> SecretStore:
    return request.app.state.auth_service.secrets


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    response: Response,
    body: ApiKeyCreate,
    principal: Principal = Depends(require_session),
) -> ApiKeyCreatedResponse:
    issued = _secrets(request).issue(
        principal.user_id,
        body.name,
        [s.value for s in body.scopes],
        get_client_info(request),
    )
    response.headers["Cache-Control"] = "no-store"
    return ApiKeyCreatedResponse.from_issued(issued)


@router.get("/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    include_revoked: bool = Query(default=False),
    principal: Principal = Depends(require_session),
) -> list[ApiKeyResponse]:
    secrets = _secrets(request).list_secrets(principal.user_id, include_revoked=include_revoked)
    return [ApiKeyResponse.from_secret(s) for s in secrets]


@router.delete("/api-keys/{key_id}", response_model=MessageResponse)
def revoke_api_key(
    request: Request,
    key_id: int,
    principal: Principal = Depends(require_session),
) -> MessageResponse:
    _secrets(request).revoke(principal.user_id, key_id, get_client_info(request))
    return MessageResponse(message="API key revoked.")
