"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-token auth.

Every protected request carries:
  Authorization: Bearer {id}|{secret}

try_get_current_token() is the soft variant (returns None on failure).
get_current_token() wraps it and raises HTTP 401 if unauthenticated.
require_abilities() / require_any_ability() build route-level ability gates
that raise HTTP 403 -- the equivalents of "abilities:a,b" and "ability:a,b".

All authentication failures (malformed, unknown, wrong secret, expired)
produce the same 401 body. The specific reason is logged at DEBUG only.

Layer rule: auth/dependencies.py may import from fastapi (for Request and
HTTPException) because this module is part of the FastAPI dependency
injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.abilities import can_all, can_any
from auth.errors import AuthFailure
from auth.models import AuthenticatedToken
from auth.service import TokenService

logger = logging.getLogger("tokenkeeper.auth")

_UNAUTHORIZED = {"code": "unauthorized", "message": "Authentication required."}


def _bearer_credential(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def try_get_current_token(request: Request) -> AuthenticatedToken | None:
    """Authenticate the request's bearer credential.

    Returns the AuthenticatedToken on success, None on any failure.
    Never raises for bad credentials -- callers that need a hard 401 should
    use get_current_token(). Store errors propagate (they become a 500).
    """
    credential = _bearer_credential(request)
    if credential is None:
        return None
    service: TokenService = request.app.state.token_service
    try:
        return service.authenticate(credential)
    except AuthFailure as exc:
        logger.debug("Bearer authentication failed (%s) on %s", exc.reason, request.url.path)
        return None


def get_current_token(request: Request) -> AuthenticatedToken:
    """Require a valid bearer token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(auth: AuthenticatedToken = Depends(get_current_token)): ...
    """
    auth = try_get_current_token(request)
    if auth is None:
        raise HTTPException(status_code=401, detail=_UNAUTHORIZED, headers={"WWW-Authenticate": "Bearer"})
    return auth


def _forbidden(abilities: tuple[str, ...]) -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={
            "code": "forbidden",
            "message": "Token lacks the required ability.",
            "detail": ", ".join(abilities),
        },
    )


def require_abilities(*abilities: str) -> Callable[..., AuthenticatedToken]:
    """Dependency factory: the token must carry every listed ability.

        @router.get("/orders")
        async def orders(auth = Depends(require_abilities("check-status", "place-orders"))): ...
    """

    def dependency(auth: AuthenticatedToken = Depends(get_current_token)) -> AuthenticatedToken:
        if not can_all(auth.token, abilities):
            raise _forbidden(abilities)
        return auth

    return dependency


def require_any_ability(*abilities: str) -> Callable[..., AuthenticatedToken]:
    """Dependency factory: the token must carry at least one listed ability."""

    def dependency(auth: AuthenticatedToken = Depends(get_current_token)) -> AuthenticatedToken:
        if not can_any(auth.token, abilities):
            raise _forbidden(abilities)
        return auth

    return dependency
