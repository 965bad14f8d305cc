"""
auth/abilities.py -- Ability checks for verified tokens.

Pure functions over a token's ability list: no I/O, no mutation. Matching is
case-sensitive and exact; the only wildcard is the global "*", which
satisfies every check. Prefix patterns such as "posts:*" are plain strings
here and only match themselves.

Ownership ("does the token's owner own this resource") is the caller's
concern and must be checked separately.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import PersonalAccessToken

WILDCARD = "*"


def can(token: PersonalAccessToken, ability: str) -> bool:
    return WILDCARD in token.abilities or ability in token.abilities


def cannot(token: PersonalAccessToken, ability: str) -> bool:
    return not can(token, ability)


def can_all(token: PersonalAccessToken, abilities: Iterable[str]) -> bool:
    """True if every requested ability passes can(). Vacuously true for none."""
    return all(can(token, a) for a in abilities)


def can_any(token: PersonalAccessToken, abilities: Iterable[str]) -> bool:
    """True if at least one requested ability passes can(). False for none."""
    return any(can(token, a) for a in abilities)


def normalize_abilities(abilities: Iterable[str]) -> list[str]:
    """Deduplicate while preserving first-seen order.

    Raises ValueError for anything that is not a non-empty string; the
    service turns that into InvalidAbilities.
    """
    if isinstance(abilities, str):
        raise ValueError("Abilities must be a list of strings, not a single string.")
    seen: set[str] = set()
    result: list[str] = []
    for ability in abilities:
        if not isinstance(ability, str) or not ability:
            raise ValueError(f"Invalid ability: {ability!r}")
        if ability not in seen:
            seen.add(ability)
            result.append(ability)
    return result
