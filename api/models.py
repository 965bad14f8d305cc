"""
API request and response models for TokenKeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.models import PersonalAccessToken, TokenStatistics

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TokenCreate(BaseModel):
    """Request body for POST /api/v1/tokens/create."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    expires_in_minutes: Optional[int] = Field(
        default=None,
        ge=0,
        description="Token lifetime in minutes. Omit for the server default (usually never).",
    )


class TokenCreateWithAbilities(TokenCreate):
    """Request body for POST /api/v1/tokens/create-with-abilities."""

    abilities: list[str] = Field(default_factory=list, max_length=100)

    @field_validator("abilities", mode="before")
    @classmethod
    def dedupe_abilities(cls, values: list) -> list:
        """Deduplicate while preserving original order.

        Abilities are case-sensitive, so unlike identifiers elsewhere they
        are not normalized -- only exact duplicates are dropped.
        """
        if not isinstance(values, list):
            return values
        seen: set = set()
        result: list = []
        for v in values:
            if not isinstance(v, str):
                result.append(v)  # left for the str type check to reject
            elif v not in seen:
                seen.add(v)
                result.append(v)
        return result

    @field_validator("abilities")
    @classmethod
    def non_empty_abilities(cls, values: list[str]) -> list[str]:
        if any(not v for v in values):
            raise ValueError("Abilities must be non-empty strings.")
        return values


class AbilityPatch(BaseModel):
    """Request body for PATCH /api/v1/tokens/{id}/abilities."""

    add: Optional[str] = Field(default=None, min_length=1, max_length=255)
    remove: Optional[str] = Field(default=None, min_length=1, max_length=255)

    @model_validator(mode="after")
    def require_one(self) -> "AbilityPatch":
        if self.add is None and self.remove is None:
            raise ValueError("Provide 'add', 'remove', or both.")
        return self


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """One token as shown to its owner. Never includes the hash or secret."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    abilities: list[str]
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_token(cls, token: PersonalAccessToken) -> "TokenResponse":
        """Factory Method -- the mapping lives next to the output model."""
        return cls(
            id=token.id,
            name=token.name,
            abilities=list(token.abilities),
            last_used_at=token.last_used_at,
            expires_at=token.expires_at,
            created_at=token.created_at,
            updated_at=token.updated_at,
        )


class NewTokenResponse(TokenResponse):
    """Returned once at creation. `token` is the plaintext "{id}|{secret}"."""

    token: str


class TokenListResponse(BaseModel):
    tokens: list[TokenResponse]


class TokenStatisticsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    active: int
    expired: int
    unused: int
    last_used_at: Optional[datetime] = None
    oldest_created_at: Optional[datetime] = None

    @classmethod
    def from_statistics(cls, stats: TokenStatistics) -> "TokenStatisticsResponse":
        return cls(
            total=stats.total,
            active=stats.active,
            expired=stats.expired,
            unused=stats.unused,
            last_used_at=stats.last_used_at,
            oldest_created_at=stats.oldest_created_at,
        )


class AbilityCheckResponse(BaseModel):
    ability: str
    has_ability: bool


class AbilityPatchResponse(BaseModel):
    changed: bool
    token: TokenResponse


class MessageResponse(BaseModel):
    message: str


class RevokeResponse(BaseModel):
    message: str
    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
