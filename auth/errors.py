"""
auth/errors.py -- Exception taxonomy for the token service.

Every condition the service reports is a subclass of TokenServiceError so the
HTTP layer can translate them in one place. SQLAlchemy errors are never
wrapped here: connectivity problems and unexpected constraint violations
propagate to the caller unchanged.

AuthFailure subclasses carry a short reason code for logs and tests. The HTTP
layer deliberately collapses all of them into one generic 401 so clients
cannot tell a malformed credential from an unknown or expired one.
"""

from __future__ import annotations


class TokenServiceError(Exception):
    """Base class for every error raised by the token service."""


class OwnerNotFound(TokenServiceError):
    """The owner reference does not resolve to an existing entity."""


class InvalidName(TokenServiceError, ValueError):
    """Token name is missing or blank."""


class InvalidAbilities(TokenServiceError, ValueError):
    """Ability list contains something other than non-empty strings."""


class HashCollision(TokenServiceError):
    """The generated token hash already exists. Internal -- the issuer retries."""


class CreationFailed(TokenServiceError):
    """Token could not be created after retrying with fresh randomness."""


class ConcurrentUpdateConflict(TokenServiceError):
    """An ability mutation kept losing the compare-and-set race."""


class AuthFailure(TokenServiceError):
    """A credential did not authenticate."""

    reason = "invalid"


class MalformedCredential(AuthFailure):
    """The credential is not of the form "{id}|{secret}"."""

    reason = "malformed"


class InvalidCredential(AuthFailure):
    """Unknown token id or wrong secret. The two are deliberately merged."""

    reason = "invalid_credential"


class ExpiredToken(AuthFailure):
    """The credential matched a token whose expires_at has passed."""

    reason = "expired"
