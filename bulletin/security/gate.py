"""
Auth gate: resolves the caller before any handler runs.

Per request:

1. The access policy is consulted first; a public route bypasses every
   token step and the ``Authorization`` header is never read.
2. A missing header, or one without the ``Bearer `` prefix, leaves the
   request unauthenticated.
3. Otherwise the token is verified and its subject looked up in the
   credential store; an unknown or disabled account is rejected.
4. The policy decides between 401, 403 and letting the request through
   with ``request.state.identity`` set.

Nothing is cached or stored between requests; the signing key held by the
``TokenService`` is the only long-lived state involved.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from bulletin.exceptions import (
    AuthError,
    AuthFailure,
    ExpiredToken,
    MalformedToken,
    StorageError,
)
from bulletin.security.identity import Identity
from bulletin.security.policy import AccessPolicy, Decision
from bulletin.security.tokens import TokenService
from bulletin.services import user_service

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def extract_bearer(header_value: str | None) -> str | None:
    """Return the token from an ``Authorization`` value, or None."""
    if not header_value or not header_value.startswith(BEARER_PREFIX):
        return None
    return header_value[len(BEARER_PREFIX):].strip()


async def authenticate(
    db: AsyncSession, token_service: TokenService, header_value: str
) -> Identity:
    """
    Resolve a ``Bearer`` header value to an ``Identity``.

    Raises ``AuthError`` (malformed / expired / unknown / disabled) or
    ``StorageError`` when the credential store cannot be queried.
    """
    token = extract_bearer(header_value)
    if not token:
        raise AuthError(AuthFailure.MALFORMED, "Missing bearer token")

    try:
        username = token_service.verify(token)
    except ExpiredToken as exc:
        raise AuthError(AuthFailure.EXPIRED, "Token expired") from exc
    except MalformedToken as exc:
        raise AuthError(AuthFailure.MALFORMED, "Invalid token") from exc

    try:
        user = await user_service.find_by_username(db, username)
    except SQLAlchemyError as exc:
        raise StorageError("Credential store unavailable") from exc

    if user is None:
        raise AuthError(AuthFailure.UNKNOWN, "Unknown user")
    if not user.enabled:
        raise AuthError(AuthFailure.DISABLED, "Account disabled")
    return Identity(user_id=user.id, username=user.username, roles=user.role_names)


class AuthGateMiddleware:
    """
    Pure ASGI middleware wrapping the router.

    The session factory and token service are read from ``app.state`` at
    request time so tests can swap them without rebuilding the app.
    """

    def __init__(self, app: ASGIApp, policy: AccessPolicy) -> None:
        self.app = app
        self.policy = policy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method, path = scope["method"], scope["path"]
        rule = self.policy.match(method, path)
        if rule.is_public:
            await self.app(scope, receive, send)
            return

        identity = None
        header_value = Headers(scope=scope).get("authorization")
        if extract_bearer(header_value) is not None:
            state = scope["app"].state
            try:
                async with state.session_factory() as session:
                    identity = await authenticate(session, state.token_service, header_value)
            except AuthError as exc:
                logger.warning("Rejected %s %s: %s", method, path, exc.reason.value)
                await _unauthorized(str(exc), exc.reason)(scope, receive, send)
                return
            except StorageError:
                logger.exception("Credential lookup failed for %s %s", method, path)
                response = JSONResponse({"detail": "Storage unavailable"}, status_code=500)
                await response(scope, receive, send)
                return

        decision = self.policy.decide(rule, identity)
        if decision is Decision.UNAUTHENTICATED:
            await _unauthorized("Not authenticated")(scope, receive, send)
            return
        if decision is Decision.FORBIDDEN:
            logger.warning("Forbidden %s %s for %s", method, path, identity.username)
            response = JSONResponse(
                {"detail": "You do not have permission to perform this action"},
                status_code=403,
            )
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["identity"] = identity
        await self.app(scope, receive, send)


def _unauthorized(detail: str, reason: AuthFailure | None = None) -> JSONResponse:
    body = {"detail": detail}
    if reason is not None:
        body["reason"] = reason.value
    return JSONResponse(body, status_code=401, headers={"WWW-Authenticate": "Bearer"})
