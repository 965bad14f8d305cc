"""
api/routes/v1/tokens.py -- Token issuance, listing and revocation endpoints.

Routes:
  POST   /api/v1/tokens/create                 -- mint a wildcard token
  POST   /api/v1/tokens/create-with-abilities  -- mint a scoped token
  GET    /api/v1/tokens                        -- list the caller's tokens
  GET    /api/v1/tokens/statistics             -- counts for the caller's tokens
  GET    /api/v1/tokens/check-ability          -- does the current token have ?ability=X
  POST   /api/v1/tokens/revoke-others          -- revoke all but the current token
  PATCH  /api/v1/tokens/{id}/abilities         -- add/remove one ability (ownership checked)
  DELETE /api/v1/tokens/{id}                   -- revoke one token (ownership checked)
  DELETE /api/v1/tokens                        -- revoke all of the caller's tokens

Every route requires a bearer token (get_current_token). The owner acting is
always the owner of that token -- passed explicitly to the service.

Security:
  [H2] Token creation is rate-limited per IP (TOKEN_CREATE_RATE_LIMIT).
  [M5] Cache-Control: no-store on responses carrying a plaintext credential.
  IDOR guard: revoke and ability changes are scoped by the caller's OwnerRef.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    AbilityCheckResponse,
    AbilityPatch,
    AbilityPatchResponse,
    MessageResponse,
    NewTokenResponse,
    RevokeResponse,
    TokenCreate,
    TokenCreateWithAbilities,
    TokenListResponse,
    TokenResponse,
    TokenStatisticsResponse,
)
from auth.abilities import can
from auth.dependencies import get_current_token
from auth.errors import ConcurrentUpdateConflict, CreationFailed, InvalidAbilities, InvalidName, OwnerNotFound
from auth.models import AuthenticatedToken
from auth.service import TokenService
from core.config import get_settings

router = APIRouter()

_TOKEN_NOT_FOUND = {"code": "not_found", "message": "Token not found."}


def _service(request: Request) -> TokenService:
    return request.app.state.token_service


def _mint(
    request: Request,
    auth: AuthenticatedToken,
    name: str,
    abilities: list[str] | None,
    expires_in_minutes: int | None,
    response: Response,
) -> NewTokenResponse:
    ttl = timedelta(minutes=expires_in_minutes) if expires_in_minutes is not None else None
    try:
        new = _service(request).mint(auth.token.owner, name, abilities=abilities, ttl=ttl)
    except (InvalidName, InvalidAbilities) as exc:
        raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(exc)}) from exc
    except OwnerNotFound as exc:
        raise HTTPException(status_code=404, detail={"code": "owner_not_found", "message": str(exc)}) from exc
    except CreationFailed as exc:
        raise HTTPException(
            status_code=500,
            detail={"code": "creation_failed", "message": "Could not create token. Try again."},
        ) from exc

    response.headers["Cache-Control"] = "no-store"  # [M5]
    base = TokenResponse.from_token(new.token)
    return NewTokenResponse(**base.model_dump(), token=new.plaintext)


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().token_create_rate_limit)  # [H2] must be ABOVE @router
@router.post("/tokens/create", response_model=NewTokenResponse, status_code=201)
async def create_token(
    request: Request,
    response: Response,
    body: TokenCreate,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> NewTokenResponse:
    """Mint a token with every ability ("*"). The plaintext is shown ONCE."""
    return _mint(request, auth, body.name, None, body.expires_in_minutes, response)


@limiter.limit(get_settings().token_create_rate_limit)  # [H2]
@router.post("/tokens/create-with-abilities", response_model=NewTokenResponse, status_code=201)
async def create_token_with_abilities(
    request: Request,
    response: Response,
    body: TokenCreateWithAbilities,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> NewTokenResponse:
    """Mint a token limited to the given abilities. An empty list grants nothing."""
    return _mint(request, auth, body.name, body.abilities, body.expires_in_minutes, response)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/tokens", response_model=TokenListResponse)
async def list_tokens(
    request: Request,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> TokenListResponse:
    """List the caller's tokens, newest first, expired ones included. Secrets are never returned."""
    tokens = _service(request).list_tokens(auth.token.owner)
    return TokenListResponse(tokens=[TokenResponse.from_token(t) for t in tokens])


@router.get("/tokens/statistics", response_model=TokenStatisticsResponse)
async def token_statistics(
    request: Request,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> TokenStatisticsResponse:
    stats = _service(request).statistics(auth.token.owner)
    return TokenStatisticsResponse.from_statistics(stats)


@router.get("/tokens/check-ability", response_model=AbilityCheckResponse)
async def check_ability(
    ability: str | None = None,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> AbilityCheckResponse:
    """Report whether the token used for this request carries ?ability=X."""
    if not ability:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_ability", "message": "Ability parameter is required."},
        )
    return AbilityCheckResponse(ability=ability, has_ability=can(auth.token, ability))


# ---------------------------------------------------------------------------
# Revocation and re-scoping
# ---------------------------------------------------------------------------


@router.post("/tokens/revoke-others", response_model=RevokeResponse)
async def revoke_other_tokens(
    request: Request,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> RevokeResponse:
    """Log out everywhere but here: revoke every token except the one in use."""
    count = _service(request).revoke_all_except(auth.token.owner, [auth.token.id])
    return RevokeResponse(message="Other tokens revoked successfully.", revoked=count)


@router.patch("/tokens/{token_id}/abilities", response_model=AbilityPatchResponse)
async def patch_token_abilities(
    request: Request,
    token_id: int,
    body: AbilityPatch,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> AbilityPatchResponse:
    """Add and/or remove one ability on one of the caller's tokens.

    A token owned by someone else is reported as 404, same as a missing one.
    """
    service = _service(request)
    token = service.store.get_token(token_id)
    if token is None or token.owner != auth.token.owner:
        raise HTTPException(status_code=404, detail=_TOKEN_NOT_FOUND)
    try:
        changed = service.mutate_abilities(token_id, add=body.add, remove=body.remove)
    except ConcurrentUpdateConflict as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Token abilities changed concurrently. Retry."},
        ) from exc
    updated = service.store.get_token(token_id)
    if updated is None:
        # Revoked between the update and the re-read.
        raise HTTPException(status_code=404, detail=_TOKEN_NOT_FOUND)
    return AbilityPatchResponse(changed=changed, token=TokenResponse.from_token(updated))


@router.delete("/tokens/{token_id}", response_model=MessageResponse)
async def revoke_token(
    request: Request,
    token_id: int,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> MessageResponse:
    """Revoke one token. 404 if it does not exist or belongs to someone else."""
    if not _service(request).revoke_one(auth.token.owner, token_id):
        raise HTTPException(status_code=404, detail=_TOKEN_NOT_FOUND)
    return MessageResponse(message="Token revoked successfully.")


@router.delete("/tokens", response_model=RevokeResponse)
async def revoke_all_tokens(
    request: Request,
    auth: AuthenticatedToken = Depends(get_current_token),
) -> RevokeResponse:
    """Revoke every token of the caller, including the one used for this request."""
    count = _service(request).revoke_all(auth.token.owner)
    return RevokeResponse(message="All tokens revoked successfully.", revoked=count)
