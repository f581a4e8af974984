"""
Signed, time-limited identity tokens.

Tokens are HS256 JWTs carrying ``sub`` (the username), ``iat`` and ``exp``
as integer epoch seconds.  Nothing is stored server-side: a token is valid
exactly while its signature verifies against the configured key and the
service clock reads earlier than ``exp``.

PyJWT's own ``exp`` / ``iat`` checks are disabled and done here against the
injected clock, so expiry is always judged at verification time by the
same clock that issued the token.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

from bulletin.exceptions import ExpiredToken, MalformedToken

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_REQUIRED_CLAIMS = ["sub", "iat", "exp"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    value: str
    subject: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """Issue and verify identity tokens with a fixed signing key."""

    def __init__(
        self,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(hours=1),
        clock: Clock | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenService requires a non-empty signing key")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._ttl = ttl
        self._clock = clock or utcnow

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(self, subject: str) -> IssuedToken:
        """Return a token bound to *subject*, valid for ``ttl`` from now."""
        issued_at = int(self._clock().timestamp())
        expires_at = issued_at + int(self._ttl.total_seconds())
        value = jwt.encode(
            {"sub": subject, "iat": issued_at, "exp": expires_at},
            self._secret_key,
            algorithm=self._algorithm,
        )
        return IssuedToken(
            value=value,
            subject=subject,
            issued_at=datetime.fromtimestamp(issued_at, timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, timezone.utc),
        )

    def verify(self, token: str) -> str:
        """
        Return the subject embedded in *token*.

        Raises ``MalformedToken`` when the token cannot be trusted at all and
        ``ExpiredToken`` when ``now >= exp``.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={
                    "require": _REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            raise MalformedToken(str(exc)) from exc

        subject = payload["sub"]
        expires_at = payload["exp"]
        if not isinstance(subject, str) or not subject:
            raise MalformedToken("Token subject must be a non-empty string")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            raise MalformedToken("Token exp must be a number")

        if self._clock().timestamp() >= expires_at:
            raise ExpiredToken(f"Token for {subject!r} expired")
        return subject
