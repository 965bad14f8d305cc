"""
api/routes/v1/protected.py -- Sample resource routes guarded by token abilities.

These show the three ways a handler can gate on abilities:
  - inline can() / cannot() checks        (POST /server/update, /server/delete)
  - require_abilities(...)  -- all needed  (GET /orders)
  - require_any_ability(...) -- one needed (GET /reports)

Failing an ability check is 403; a missing or bad bearer token is 401.
Resource ownership is not modelled here -- real handlers must also check
that the token's owner owns the resource they touch.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from api.models import MessageResponse
from auth.abilities import can, cannot
from auth.dependencies import get_current_token, require_abilities, require_any_ability
from auth.models import AuthenticatedToken

router = APIRouter()


def _missing(ability: str) -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"code": "forbidden", "message": f"Token does not have the {ability} ability."},
    )


@router.post("/server/update", response_model=MessageResponse)
async def update_server(auth: AuthenticatedToken = Depends(get_current_token)) -> MessageResponse:
    if can(auth.token, "server:update"):
        return MessageResponse(message="Server updated successfully.")
    raise _missing("server:update")


@router.post("/server/delete", response_model=MessageResponse)
async def delete_server(auth: AuthenticatedToken = Depends(get_current_token)) -> MessageResponse:
    if cannot(auth.token, "server:delete"):
        raise _missing("server:delete")
    return MessageResponse(message="Server deleted successfully.")


@router.get("/orders", response_model=MessageResponse)
async def list_orders(
    auth: AuthenticatedToken = Depends(require_abilities("check-status", "place-orders")),
) -> MessageResponse:
    return MessageResponse(message='Token has both "check-status" and "place-orders" abilities.')


@router.get("/reports", response_model=MessageResponse)
async def list_reports(
    auth: AuthenticatedToken = Depends(require_any_ability("reports:read", "reports:admin")),
) -> MessageResponse:
    return MessageResponse(message="Token can read reports.")
