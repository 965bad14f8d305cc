"""
auth/service.py -- The token service: issue, verify, revoke, re-scope.

TokenService is the one object callers talk to. It owns the rules; TokenStore
owns the SQL and OwnerRegistry owns owner lookup. Every operation takes the
acting owner or token explicitly -- there is no ambient "current user".

Flow:
  mint()          -> NewAccessToken (row + one-time "{id}|{secret}")
  authenticate()  -> AuthenticatedToken, or raises an AuthFailure subclass
  abilities.can() and friends -> per-route checks (pure, see auth/abilities.py)
  revoke_*()      -> idempotent deletes scoped by owner

Secrets and plaintext credentials are never logged. Token ids and owner
references are.

Layer rule: no imports from api/. core/ is imported only by from_settings().
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from auth.abilities import WILDCARD, normalize_abilities
from auth.errors import (
    ConcurrentUpdateConflict,
    CreationFailed,
    ExpiredToken,
    HashCollision,
    InvalidAbilities,
    InvalidCredential,
    InvalidName,
    OwnerNotFound,
)
from auth.models import AuthenticatedToken, NewAccessToken, OwnerRef, PersonalAccessToken, TokenStatistics
from auth.owners import OwnerRegistry
from auth.store import TokenStore, utcnow
from auth.tokens import digests_match, format_credential, generate_secret, hash_token, parse_credential

logger = logging.getLogger("tokenkeeper.auth")

# One initial attempt plus one retry with fresh randomness on a hash collision.
_MINT_ATTEMPTS = 2


class TokenService:
    """Issuer, verifier and revoker over a shared TokenStore.

    Args:
        store:                    Token repository.
        owners:                   Registry used to check owners exist at mint
                                  time and to resolve them on authentication.
        secret_key:               HMAC key for token digests.
        token_prefix:             Prepended to generated secrets.
        default_ttl:              Lifetime applied when mint() gets no ttl.
                                  None means such tokens never expire.
        ability_update_attempts:  Compare-and-set attempts per ability change.
        clock:                    Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: TokenStore,
        owners: OwnerRegistry,
        *,
        secret_key: str,
        token_prefix: str = "",
        default_ttl: timedelta | None = None,
        ability_update_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.owners = owners
        self._secret_key = secret_key
        self._token_prefix = token_prefix
        self._default_ttl = default_ttl
        self._ability_update_attempts = max(1, ability_update_attempts)
        self._clock = clock

    @classmethod
    def from_settings(cls, store: TokenStore, owners: OwnerRegistry, settings=None) -> "TokenService":
        """Build a service from core.config.Settings (the app and CLI path)."""
        if settings is None:
            from core.config import get_settings

            settings = get_settings()
        default_ttl = None
        if settings.token_expiration_minutes is not None:
            default_ttl = timedelta(minutes=settings.token_expiration_minutes)
        return cls(
            store,
            owners,
            secret_key=settings.secret_key,
            token_prefix=settings.token_prefix,
            default_ttl=default_ttl,
            ability_update_attempts=settings.ability_update_attempts,
        )

    # ------------------------------------------------------------------
    # Issuer
    # ------------------------------------------------------------------

    def mint(
        self,
        owner: OwnerRef,
        name: str,
        abilities: list[str] | None = None,
        ttl: timedelta | None = None,
    ) -> NewAccessToken:
        """Create a token for owner and return it with its plaintext credential.

        abilities defaults to ["*"]. An explicit list is deduplicated in
        order; an explicit empty list grants nothing. ttl=timedelta(0)
        creates a token that is already expired.

        Raises InvalidName, InvalidAbilities, OwnerNotFound, or CreationFailed
        if both attempts hit a hash collision.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidName("Token name must be a non-empty string.")
        if abilities is None:
            abilities = [WILDCARD]
        else:
            try:
                abilities = normalize_abilities(abilities)
            except (TypeError, ValueError) as exc:
                raise InvalidAbilities(str(exc)) from exc
        if self.owners.resolve(owner) is None:
            raise OwnerNotFound(f"No {owner.kind!r} owner with id {owner.id}.")

        now = self._clock()
        if ttl is None:
            ttl = self._default_ttl
        expires_at = now + ttl if ttl is not None else None

        for attempt in range(1, _MINT_ATTEMPTS + 1):
            secret = generate_secret(self._token_prefix)
            candidate = PersonalAccessToken(
                owner_kind=owner.kind,
                owner_id=owner.id,
                name=name,
                token_hash=hash_token(secret, self._secret_key),
                abilities=abilities,
                expires_at=expires_at,
                created_at=now,
            )
            try:
                token_id = self.store.create_token(candidate)
            except HashCollision:
                logger.warning("Token hash collision for %s:%s (attempt %d)", owner.kind, owner.id, attempt)
                continue
            token = self.store.get_token(token_id)
            logger.info("Minted token id=%d name=%r for %s:%s", token_id, name, owner.kind, owner.id)
            return NewAccessToken(token=token, plaintext=format_credential(token_id, secret))

        raise CreationFailed(f"Could not create a unique token after {_MINT_ATTEMPTS} attempts.")

    # ------------------------------------------------------------------
    # Verifier
    # ------------------------------------------------------------------

    def authenticate(self, credential: str) -> AuthenticatedToken:
        """Verify "{id}|{secret}" and return the token with its owner.

        The digest is computed before the row is fetched so an unknown id
        costs the same as a wrong secret. Unknown id, wrong secret and a
        vanished owner all raise InvalidCredential. A correct credential for
        a token past its expires_at raises ExpiredToken. Malformed input
        raises MalformedCredential.

        On success last_used_at is stamped best-effort: a store error there
        is logged and does not fail the authentication.
        """
        token_id, secret = parse_credential(credential)
        digest = hash_token(secret, self._secret_key)
        token = self.store.get_token(token_id)
        if token is None or not digests_match(digest, token.token_hash):
            raise InvalidCredential("Invalid credential.")

        now = self._clock()
        if token.expires_at is not None and token.expires_at <= now:
            raise ExpiredToken("Token has expired.")

        owner = self.owners.resolve(token.owner)
        if owner is None:
            raise InvalidCredential("Invalid credential.")

        self._touch(token, now)
        return AuthenticatedToken(token=token, owner=owner)

    def _touch(self, token: PersonalAccessToken, now: datetime) -> None:
        try:
            self.store.touch_last_used(token.id, now)
        except SQLAlchemyError:
            logger.warning("Could not update last_used_at for token id=%d", token.id, exc_info=True)
            return
        if token.last_used_at is None or token.last_used_at < now:
            token.last_used_at = now

    # ------------------------------------------------------------------
    # Revoker
    # ------------------------------------------------------------------

    def revoke_one(self, owner: OwnerRef, token_id: int) -> bool:
        """Delete one of owner's tokens. False (never an error) if there was nothing to delete."""
        deleted = self.store.delete_token(owner, token_id)
        if deleted:
            logger.info("Revoked token id=%d for %s:%s", token_id, owner.kind, owner.id)
        return deleted

    def revoke_all(self, owner: OwnerRef) -> int:
        count = self.store.delete_all(owner)
        logger.info("Revoked %d token(s) for %s:%s", count, owner.kind, owner.id)
        return count

    def revoke_all_except(self, owner: OwnerRef, keep_ids: list[int]) -> int:
        """Delete all of owner's tokens except keep_ids ("log out everywhere but here")."""
        count = self.store.delete_all_except(owner, keep_ids)
        logger.info("Revoked %d token(s) for %s:%s, kept %s", count, owner.kind, owner.id, list(keep_ids))
        return count

    def mutate_abilities(self, token_id: int, add: str | None = None, remove: str | None = None) -> bool:
        """Add and/or remove a single ability on one token.

        Removal is applied before addition, so add == remove leaves the
        ability present. Returns True if the stored list changed, False if it
        was already in the desired state or the token does not exist.

        The read-modify-write is guarded by compare-and-set on the stored
        list; a lost race re-reads and retries. Raises
        ConcurrentUpdateConflict once the attempts are exhausted.
        """
        for ability in (add, remove):
            if ability is not None and (not isinstance(ability, str) or not ability):
                raise InvalidAbilities(f"Invalid ability: {ability!r}")
        if add is None and remove is None:
            return False

        for _ in range(self._ability_update_attempts):
            token = self.store.get_token(token_id)
            if token is None:
                return False
            current = token.abilities
            updated = [a for a in current if a != remove]
            if add is not None:
                updated.append(add)
            updated = normalize_abilities(updated)
            if updated == current:
                return False
            if self.store.compare_and_set_abilities(token_id, current, updated):
                logger.info("Token id=%d abilities changed (add=%r, remove=%r)", token_id, add, remove)
                return True
            logger.debug("Ability update on token id=%d lost a race, retrying", token_id)

        raise ConcurrentUpdateConflict(
            f"Abilities of token {token_id} changed concurrently {self._ability_update_attempts} time(s)."
        )

    def add_ability_to_all(self, owner: OwnerRef, ability: str) -> int:
        """Grant ability on every token of owner. Returns the number of tokens changed."""
        return sum(1 for t in self.store.list_tokens(owner) if self.mutate_abilities(t.id, add=ability))

    def remove_ability_from_all(self, owner: OwnerRef, ability: str) -> int:
        """Drop ability from every token of owner. Returns the number of tokens changed."""
        return sum(1 for t in self.store.list_tokens(owner) if self.mutate_abilities(t.id, remove=ability))

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def list_tokens(self, owner: OwnerRef) -> list[PersonalAccessToken]:
        return self.store.list_tokens(owner)

    def statistics(self, owner: OwnerRef) -> TokenStatistics:
        return self.store.statistics(owner, now=self._clock())

    def prune_expired(self, older_than: timedelta = timedelta(0)) -> int:
        """Delete tokens that expired more than `older_than` ago. Returns the count.

        The grace period keeps recently expired rows around for auditing.
        """
        count = self.store.prune_expired(self._clock() - older_than)
        if count:
            logger.info("Pruned %d expired token(s)", count)
        return count
