"""
auth/owners.py -- Registry of owner kinds for polymorphic token ownership.

A token row stores (owner_kind, owner_id). The registry maps each kind to a
resolver callable that turns an id into the owner object, or None if the
owner does not exist (or is no longer allowed to hold tokens). The service
never knows what an owner is beyond this lookup.

Usage:
    registry = OwnerRegistry()
    registry.register(USER_KIND, user_store.resolve_owner)
    owner = registry.resolve(OwnerRef(USER_KIND, 42))
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from auth.models import OwnerRef, User

USER_KIND = "user"

OwnerResolver = Callable[[int], Any]


class OwnerRegistry:
    def __init__(self) -> None:
        self._resolvers: dict[str, OwnerResolver] = {}

    def register(self, kind: str, resolver: OwnerResolver) -> None:
        """Register (or replace) the resolver for an owner kind."""
        if not kind:
            raise ValueError("Owner kind must be a non-empty string.")
        self._resolvers[kind] = resolver

    def kinds(self) -> list[str]:
        return sorted(self._resolvers)

    def resolve(self, owner: OwnerRef) -> Any | None:
        """Return the owner object, or None for unknown kinds and missing owners."""
        resolver = self._resolvers.get(owner.kind)
        if resolver is None:
            return None
        return resolver(owner.id)


def user_ref(user: User) -> OwnerRef:
    """OwnerRef for a persisted User."""
    if user.id is None:
        raise ValueError("User has not been persisted yet.")
    return OwnerRef(USER_KIND, user.id)
