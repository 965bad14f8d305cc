"""
auth/models.py -- Domain dataclasses for token authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own the SQL,
the service owns the rules, routes own the HTTP contract.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class OwnerRef:
    """Polymorphic reference to the entity a token acts on behalf of.

    kind selects the resolver in the OwnerRegistry ("user" for accounts in
    UserStore); id is the primary key inside that kind.
    """

    kind: str
    id: int


@dataclass
class User:
    """An account that can own API tokens.

    User management lives outside this service; UserStore keeps only the
    fields needed to resolve and display an owner.
    """

    username: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class PersonalAccessToken:
    """A persisted API token row.

    Security design:
    - token_hash is HMAC-SHA256(SECRET_KEY, secret). Deterministic, so the
      UNIQUE index can catch collisions; the secret itself is never stored.
    - abilities is an ordered, duplicate-free list. ["*"] grants everything.
    - expires_at None means the token never expires. An expired row stays
      queryable until the pruning sweep deletes it.
    """

    owner_kind: str
    owner_id: int
    name: str
    token_hash: str
    abilities: list[str] = field(default_factory=lambda: ["*"])
    id: int | None = None
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def owner(self) -> OwnerRef:
        return OwnerRef(self.owner_kind, self.owner_id)


@dataclass
class NewAccessToken:
    """Result of minting: the stored row plus the one-time plaintext credential.

    plaintext is "{id}|{secret}". It is unrecoverable once this object is
    discarded -- callers must hand it to the client immediately.
    """

    token: PersonalAccessToken
    plaintext: str = field(repr=False)


@dataclass
class AuthenticatedToken:
    """A verified token together with its resolved owner."""

    token: PersonalAccessToken
    owner: Any


@dataclass
class TokenStatistics:
    """Aggregate token counts for one owner."""

    total: int = 0
    active: int = 0
    expired: int = 0
    unused: int = 0
    last_used_at: datetime | None = None
    oldest_created_at: datetime | None = None
