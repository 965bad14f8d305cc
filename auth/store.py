"""
auth/store.py -- SQLAlchemy Core persistence layer for owners and tokens.

Pattern: Repository + Data Mapper. UserStore and TokenStore are the
repositories; _row_to_user / _row_to_token are the mappers. Service and route
code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps:
  Stored as fixed-width UTC ISO 8601 strings (always with microseconds and a
  "+00:00" offset) so string comparison in SQL orders them chronologically on
  every backend, including SQLite which has no native timestamp type.

Concurrency:
  Every method runs in its own short transaction. Revocation is a single
  DELETE, so a concurrent verifier either sees the row or does not.
  last_used_at is written with a conditional UPDATE that never moves it
  backwards. Ability changes go through compare_and_set_abilities(), which
  only writes when the stored list is still the one the caller read.

DB path: auth/tokenkeeper.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import HashCollision
from auth.models import OwnerRef, PersonalAccessToken, TokenStatistics, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_tokens = Table(
    "personal_access_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_kind", String(64), nullable=False),
    Column("owner_id", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("abilities", Text),  # JSON list, order preserved
    Column("last_used_at", String(32)),
    Column("expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("ix_personal_access_tokens_owner", "owner_kind", "owner_id"),
    Index("ix_personal_access_tokens_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """SQLite connect hook: WAL so verifiers keep reading while a revoke writes.

    Runs on every new pooled connection; the PRAGMA is per-connection.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dump_abilities(abilities: list[str]) -> str:
    # Compact separators: the same text PHP json_encode writes.
    return json.dumps(list(abilities), separators=(",", ":"))


def _load_abilities(raw: str | None) -> list[str]:
    # NULL or empty abilities (rows written by other tools) means "no abilities".
    return json.loads(raw) if raw else []


def _owner_clause(owner: OwnerRef):
    return (_tokens.c.owner_kind == owner.kind) & (_tokens.c.owner_id == owner.id)


# ---------------------------------------------------------------------------
# Owners
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User accounts -- the built-in "user" owner kind.

    Account management is not this service's job; the store only needs enough
    to create owners (tests, CLI bootstrap) and resolve them during mint and
    authentication.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="alice"))
        user = store.get_by_id(uid)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    created_at=_to_iso(utcnow()),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_active(self, user_id: int, is_active: bool) -> bool:
        """Activate or deactivate a user. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def resolve_owner(self, owner_id: int) -> User | None:
        """Owner-registry resolver: return the user only if it exists and is active."""
        user = self.get_by_id(owner_id)
        if user is None or not user.is_active:
            return None
        return user

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for PersonalAccessToken rows.

    Query helpers (active/expired/unused/recent/...) take an explicit OwnerRef
    and an optional `now` so callers and tests control the clock.

    Usage:
        store = TokenStore("sqlite:///tokens.db")
        token_id = store.create_token(PersonalAccessToken(...))
        token = store.get_token(token_id)
        store.delete_token(token.owner, token_id)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = _make_engine(db_url)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_token(self, token: PersonalAccessToken) -> int:
        """Insert a token row and return its ID.

        created_at defaults to now when the model does not carry one;
        updated_at always equals created_at on insert.

        Raises HashCollision if token_hash already exists. Any other
        IntegrityError is re-raised unchanged.
        """
        created = _to_iso(token.created_at or utcnow())
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _tokens.insert().values(
                        owner_kind=token.owner_kind,
                        owner_id=token.owner_id,
                        name=token.name,
                        token_hash=token.token_hash,
                        abilities=_dump_abilities(token.abilities),
                        last_used_at=_to_iso(token.last_used_at),
                        expires_at=_to_iso(token.expires_at),
                        created_at=created,
                        updated_at=created,
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            if self.hash_exists(token.token_hash):
                raise HashCollision("token_hash already exists") from exc
            raise

    def touch_last_used(self, token_id: int, when: datetime) -> bool:
        """Stamp last_used_at unless a later stamp is already stored.

        Concurrent verifications of the same token race here; the WHERE
        clause makes the column monotonic regardless of commit order.
        Returns True if the row was updated.
        """
        stamp = _to_iso(when)
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.id == token_id)
                    & or_(_tokens.c.last_used_at.is_(None), _tokens.c.last_used_at < stamp)
                )
                .values(last_used_at=stamp, updated_at=stamp)
            )
            conn.commit()
        return result.rowcount > 0

    def compare_and_set_abilities(self, token_id: int, expected: list[str], new: list[str]) -> bool:
        """Replace the ability list only if it still equals `expected`.

        The guard is the stored text itself, whatever wrote it (compact or
        spaced JSON, NULL), so rows from other tools can be re-scoped too.
        Returns False when another writer changed the list first (or the
        token is gone); the caller re-reads and retries.
        """
        with self.engine.connect() as conn:
            row = conn.execute(select(_tokens.c.abilities).where(_tokens.c.id == token_id)).first()
            if row is None or _load_abilities(row.abilities) != list(expected):
                return False
            if row.abilities is None:
                unchanged = _tokens.c.abilities.is_(None)
            else:
                unchanged = _tokens.c.abilities == row.abilities
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.id == token_id) & unchanged)
                .values(abilities=_dump_abilities(new), updated_at=_to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_token(self, owner: OwnerRef, token_id: int) -> bool:
        """Delete one token. owner is part of the WHERE clause to prevent IDOR.

        Returns True if a row was deleted, False if not found or wrong owner.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_owner_clause(owner) & (_tokens.c.id == token_id)))
            conn.commit()
        return result.rowcount > 0

    def delete_all(self, owner: OwnerRef) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_owner_clause(owner)))
            conn.commit()
        return result.rowcount

    def delete_all_except(self, owner: OwnerRef, keep_ids: list[int]) -> int:
        """Delete every token of owner whose id is not in keep_ids.

        An empty keep_ids deletes all of the owner's tokens.
        """
        clause = _owner_clause(owner)
        if keep_ids:
            clause = clause & _tokens.c.id.not_in(list(keep_ids))
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(clause))
            conn.commit()
        return result.rowcount

    def prune_expired(self, before: datetime) -> int:
        """Delete every token (any owner) whose expires_at is at or before `before`."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.delete().where(_tokens.c.expires_at.is_not(None) & (_tokens.c.expires_at <= _to_iso(before)))
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_token(self, token_id: int) -> PersonalAccessToken | None:
        """Look up a token by primary key, expired or not. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def hash_exists(self, token_hash: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_tokens.c.id).where(_tokens.c.token_hash == token_hash)).fetchone()
        return row is not None

    def list_tokens(self, owner: OwnerRef) -> list[PersonalAccessToken]:
        """Return all of owner's tokens, newest first, including expired ones."""
        return self._select(_owner_clause(owner))

    def active_tokens(self, owner: OwnerRef, now: datetime | None = None) -> list[PersonalAccessToken]:
        return self._select(_owner_clause(owner) & self._active_clause(now))

    def expired_tokens(self, owner: OwnerRef, now: datetime | None = None) -> list[PersonalAccessToken]:
        return self._select(_owner_clause(owner) & self._expired_clause(now))

    def unused_tokens(self, owner: OwnerRef) -> list[PersonalAccessToken]:
        return self._select(_owner_clause(owner) & _tokens.c.last_used_at.is_(None))

    def recent_tokens(self, owner: OwnerRef, limit: int = 5) -> list[PersonalAccessToken]:
        """Return the most recently used tokens (never-used tokens excluded)."""
        query = (
            _tokens.select()
            .where(_owner_clause(owner) & _tokens.c.last_used_at.is_not(None))
            .order_by(_tokens.c.last_used_at.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_token(r) for r in rows]

    def find_by_name(self, owner: OwnerRef, name: str) -> PersonalAccessToken | None:
        """Return the oldest of owner's tokens with this exact name, or None."""
        query = (
            _tokens.select()
            .where(_owner_clause(owner) & (_tokens.c.name == name))
            .order_by(_tokens.c.id)
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_token(row) if row is not None else None

    def has_active_tokens(self, owner: OwnerRef, now: datetime | None = None) -> bool:
        query = select(_tokens.c.id).where(_owner_clause(owner) & self._active_clause(now)).limit(1)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return row is not None

    def tokens_with_ability(self, owner: OwnerRef, ability: str) -> list[PersonalAccessToken]:
        """Return owner's tokens whose stored list literally contains `ability`.

        The "*" wildcard is not expanded: this answers "which tokens were
        granted this ability", not "which tokens would pass a check for it".
        Filtering happens in Python because JSON containment is not portable
        across backends.
        """
        return [t for t in self.list_tokens(owner) if ability in t.abilities]

    def statistics(self, owner: OwnerRef, now: datetime | None = None) -> TokenStatistics:
        owner_clause = _owner_clause(owner)
        with self.engine.connect() as conn:

            def count(clause) -> int:
                return conn.execute(select(func.count()).select_from(_tokens).where(clause)).scalar() or 0

            total = count(owner_clause)
            active = count(owner_clause & self._active_clause(now))
            expired = count(owner_clause & self._expired_clause(now))
            unused = count(owner_clause & _tokens.c.last_used_at.is_(None))
            last_used = conn.execute(select(func.max(_tokens.c.last_used_at)).where(owner_clause)).scalar()
            oldest = conn.execute(select(func.min(_tokens.c.created_at)).where(owner_clause)).scalar()
        return TokenStatistics(
            total=total,
            active=active,
            expired=expired,
            unused=unused,
            last_used_at=_from_iso(last_used),
            oldest_created_at=_from_iso(oldest),
        )

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _active_clause(now: datetime | None):
        stamp = _to_iso(now or utcnow())
        return or_(_tokens.c.expires_at.is_(None), _tokens.c.expires_at > stamp)

    @staticmethod
    def _expired_clause(now: datetime | None):
        stamp = _to_iso(now or utcnow())
        return _tokens.c.expires_at.is_not(None) & (_tokens.c.expires_at <= stamp)

    def _select(self, clause) -> list[PersonalAccessToken]:
        query = _tokens.select().where(clause).order_by(_tokens.c.created_at.desc(), _tokens.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_token(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )


def _row_to_token(row) -> PersonalAccessToken:
    return PersonalAccessToken(
        id=row.id,
        owner_kind=row.owner_kind,
        owner_id=row.owner_id,
        name=row.name,
        token_hash=row.token_hash,
        abilities=_load_abilities(row.abilities),
        last_used_at=_from_iso(row.last_used_at),
        expires_at=_from_iso(row.expires_at),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )
