#!/usr/bin/env python3
"""
TokenKeeper -- command-line administration for the token store.

Usage:
  python main.py create-user alice
  python main.py create-token --owner-id 1 --name "CI deploy" --ability deploy --ability read
  python main.py create-token --owner-id 1 --name laptop --expires-in 1440
  python main.py list-tokens --owner-id 1
  python main.py list-tokens --owner-id 1 --json
  python main.py revoke-all --owner-id 1
  python main.py prune-expired --hours 24

Environment variables:
  SECRET_KEY     HMAC key for token digests (required unless DEBUG=true).
  DATABASE_URL   SQLAlchemy URL of the token database.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import TokenServiceError
from auth.models import OwnerRef, PersonalAccessToken, User
from auth.owners import USER_KIND, OwnerRegistry
from auth.service import TokenService
from auth.store import TokenStore, UserStore
from core.config import Settings, get_settings

logger = logging.getLogger("tokenkeeper.cli")


def _build(settings: Settings) -> tuple[UserStore, TokenStore, TokenService]:
    user_store = UserStore(settings.database_url)
    token_store = TokenStore(settings.database_url)
    owners = OwnerRegistry()
    owners.register(USER_KIND, user_store.resolve_owner)
    return user_store, token_store, TokenService.from_settings(token_store, owners, settings)


def _token_row(token: PersonalAccessToken) -> dict:
    def iso(value):
        return value.isoformat() if value else None

    return {
        "id": token.id,
        "name": token.name,
        "abilities": token.abilities,
        "last_used_at": iso(token.last_used_at),
        "expires_at": iso(token.expires_at),
        "created_at": iso(token.created_at),
    }


def _print_table(tokens: list[PersonalAccessToken]) -> None:
    if not tokens:
        print("  No tokens.")
        return
    print(f"  {'ID':>6}  {'NAME':<24}  {'ABILITIES':<30}  {'EXPIRES':<25}  LAST USED")
    print("  " + "─" * 110)
    for t in tokens:
        expires = t.expires_at.isoformat(timespec="seconds") if t.expires_at else "never"
        last_used = t.last_used_at.isoformat(timespec="seconds") if t.last_used_at else "never"
        print(f"  {t.id:>6}  {t.name[:24]:<24}  {', '.join(t.abilities)[:30]:<30}  {expires:<25}  {last_used}")


def run(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    """Parse argv, run one command, return the process exit code."""
    parser = argparse.ArgumentParser(
        prog="tokenkeeper",
        description="Administer TokenKeeper API tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:", 1)[1] if __doc__ else None,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_user = sub.add_parser("create-user", help="Create a user that can own tokens")
    p_user.add_argument("username")

    def add_owner_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--owner-id", type=int, required=True, metavar="N", help="Owner primary key")
        p.add_argument(
            "--owner-kind",
            default=USER_KIND,
            metavar="KIND",
            help=f"Owner kind (default: {USER_KIND})",
        )

    p_create = sub.add_parser("create-token", help="Mint a token and print its plaintext once")
    add_owner_args(p_create)
    p_create.add_argument("--name", required=True, help="Label for the token")
    p_create.add_argument(
        "--ability",
        action="append",
        dest="abilities",
        metavar="ABILITY",
        help="Grant an ability (repeatable). Omit for all abilities (*).",
    )
    p_create.add_argument(
        "--expires-in",
        type=int,
        default=None,
        metavar="MINUTES",
        help="Token lifetime in minutes (default: server setting, usually never)",
    )

    p_list = sub.add_parser("list-tokens", help="List an owner's tokens")
    add_owner_args(p_list)
    p_list.add_argument("--json", action="store_true", help="Output structured JSON")

    p_revoke = sub.add_parser("revoke-all", help="Revoke every token of an owner")
    add_owner_args(p_revoke)

    p_prune = sub.add_parser("prune-expired", help="Delete tokens that expired more than N hours ago")
    p_prune.add_argument(
        "--hours",
        type=int,
        default=None,
        metavar="N",
        help="Grace period in hours (default: PRUNE_EXPIRED_AFTER_HOURS)",
    )

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = settings or get_settings()
    logger.debug("Running %s", args.command)
    user_store, token_store, service = _build(settings)
    try:
        if args.command == "create-user":
            try:
                uid = user_store.create_user(User(username=args.username))
            except IntegrityError:
                print(f"  [!] User {args.username!r} already exists.", file=sys.stderr)
                return 1
            print(f"  Created user {args.username!r} with id {uid}.")

        elif args.command == "create-token":
            ttl = timedelta(minutes=args.expires_in) if args.expires_in is not None else None
            owner = OwnerRef(args.owner_kind, args.owner_id)
            new = service.mint(owner, args.name, abilities=args.abilities, ttl=ttl)
            print(f"  Created token {new.token.id} ({new.token.name}) for {owner.kind}:{owner.id}.")
            print("  Copy it now -- it will not be shown again:\n")
            print(f"  {new.plaintext}\n")

        elif args.command == "list-tokens":
            tokens = service.list_tokens(OwnerRef(args.owner_kind, args.owner_id))
            if args.json:
                print(json.dumps([_token_row(t) for t in tokens], indent=2))
            else:
                _print_table(tokens)

        elif args.command == "revoke-all":
            count = service.revoke_all(OwnerRef(args.owner_kind, args.owner_id))
            print(f"  Revoked {count} token(s).")

        elif args.command == "prune-expired":
            hours = args.hours if args.hours is not None else settings.prune_expired_after_hours
            count = service.prune_expired(older_than=timedelta(hours=hours))
            print(f"  Pruned {count} expired token(s) older than {hours} hour(s).")

    except TokenServiceError as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return 1
    finally:
        token_store.close()
        user_store.close()
    return 0


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")
    sys.exit(run())


if __name__ == "__main__":
    main()
