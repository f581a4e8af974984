"""
Error taxonomy shared by the services, the auth gate and the HTTP layer.

Every failure path in the core raises one of these types; ``main.py``
registers a handler for each so the boundary always answers with an
explicit status code and a JSON body.
"""
from dataclasses import dataclass
from enum import Enum


class AuthFailure(str, Enum):
    MALFORMED = "malformed"
    EXPIRED = "expired"
    UNKNOWN = "unknown"
    DISABLED = "disabled"


class AuthError(Exception):
    """The caller could not be authenticated.  Always answered with 401."""

    def __init__(self, reason: AuthFailure, message: str | None = None) -> None:
        super().__init__(message or f"Authentication failed: {reason.value}")
        self.reason = reason


class TokenError(Exception):
    """Base class for token verification failures."""


class MalformedToken(TokenError):
    """Bad signature, bad structure, or a missing / ill-typed claim."""


class ExpiredToken(TokenError):
    """The token was well-formed but its ``exp`` has been reached."""


@dataclass(frozen=True)
class FieldError:
    field: str
    code: str
    message: str


class ValidationError(Exception):
    """One or more request fields were rejected before touching the store."""

    def __init__(self, errors: list[FieldError]) -> None:
        super().__init__("; ".join(f"{e.field}: {e.code}" for e in errors))
        self.errors = errors

    def to_list(self) -> list[dict]:
        return [
            {"field": e.field, "code": e.code, "message": e.message}
            for e in self.errors
        ]


class ConflictError(Exception):
    """A uniqueness rule was violated (e.g. duplicate username)."""


class StorageError(Exception):
    """The credential store, article store or blob store failed."""


class ConfigurationError(Exception):
    """The deployment is missing something the core requires (e.g. a role)."""
