"""
auth/tokens.py -- Secret generation, hashing, and credential parsing.

Security design decisions:
  Secrets: secrets.token_hex(32) gives 256 bits of entropy -- brute-force is
       computationally infeasible. An optional TOKEN_PREFIX is prepended so
       leaked credentials are recognizable by secret scanners.

  Digest: we store HMAC-SHA256(SECRET_KEY, secret). The digest is fast and
       deterministic, so the UNIQUE index on token_hash can detect collisions
       and verification stays cheap on the hot path. bcrypt's intentional
       slowness buys nothing for 256-bit secrets. Keying with SECRET_KEY means
       a leaked database alone is not enough to test candidate secrets.

  Credential format: "{id}|{secret}". The id lets the verifier fetch the row
       by primary key before comparing digests with hmac.compare_digest.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from auth.errors import MalformedCredential
from core.config import get_settings

_SEPARATOR = "|"
SECRET_BYTES = 32
# Largest signed 64-bit integer; ids beyond it cannot exist in the store.
_MAX_ID = 2**63 - 1


def generate_secret(prefix: str = "") -> str:
    """Return a new random secret: prefix + 64 hex chars."""
    return f"{prefix}{secrets.token_hex(SECRET_BYTES)}"


def hash_token(secret: str, key: str | None = None) -> str:
    """Return HMAC-SHA256(key, secret) as a 64-char hex string.

    key defaults to SECRET_KEY from settings. The service passes its own key
    explicitly so tests can run several services side by side.
    """
    if key is None:
        key = get_settings().secret_key
    return hmac.new(key.encode(), secret.encode(), hashlib.sha256).hexdigest()


def digests_match(a: str, b: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return hmac.compare_digest(a.encode(), b.encode())


def format_credential(token_id: int, secret: str) -> str:
    return f"{token_id}{_SEPARATOR}{secret}"


def parse_credential(credential: str) -> tuple[int, str]:
    """Split "{id}|{secret}" into (id, secret).

    Splits on the first separator only. The id must be a positive decimal
    integer and the secret must be non-empty; anything else raises
    MalformedCredential.
    """
    if not isinstance(credential, str) or _SEPARATOR not in credential:
        raise MalformedCredential("Credential must have the form '{id}|{secret}'.")
    raw_id, secret = credential.split(_SEPARATOR, 1)
    # str.isdigit() accepts non-ASCII digits; restrict to 0-9 explicitly.
    if not raw_id or not raw_id.isascii() or not raw_id.isdigit():
        raise MalformedCredential("Credential id must be a decimal integer.")
    token_id = int(raw_id)
    if not 0 < token_id <= _MAX_ID or not secret:
        raise MalformedCredential("Credential id is out of range or secret is empty.")
    return token_id, secret
