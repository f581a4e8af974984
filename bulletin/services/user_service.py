"""
User service: the credential store behind login, registration and the
auth gate.

Users are fetched without caching: the gate must see a disabled account
on the very next request.
"""
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bulletin.exceptions import AuthError, AuthFailure, ConfigurationError, ConflictError
from bulletin.models import Role, User
from bulletin.schemas import Credentials, UserRegister, UserUpdate
from bulletin.security.passwords import hash_password, verify_password

logger = logging.getLogger(__name__)

DEFAULT_USER_ROLE = "ROLE_USER"


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "enabled": user.enabled,
        "roles": sorted(user.role_names),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------

async def find_by_username(db: AsyncSession, username: str) -> User | None:
    """Return the user named *username* with roles loaded, or None."""
    q = (
        select(User)
        .where(User.username == username)
        .options(selectinload(User.roles))
    )
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def save_user(db: AsyncSession, user: User) -> User:
    """
    Insert or update *user*.

    A duplicate username surfaces as ``ConflictError``; the failed flush
    leaves the session unusable, so the caller's transaction is rolled
    back by ``get_db``.
    """
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise ConflictError(f"Username {user.username!r} already exists") from exc
    return user


async def ensure_roles(db: AsyncSession, names: list[str]) -> list[Role]:
    """Create any role in *names* that does not exist yet.  Idempotent."""
    result = await db.execute(select(Role).where(Role.name.in_(names)))
    existing = {r.name: r for r in result.scalars().all()}
    roles: list[Role] = []
    for name in names:
        role = existing.get(name)
        if role is None:
            role = Role(name=name)
            db.add(role)
            logger.info("Created missing role %s", name)
        roles.append(role)
    await db.flush()
    return roles


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def register_user(db: AsyncSession, data: UserRegister) -> User:
    """
    Create a user holding ``ROLE_USER``.

    Raises ``ConflictError`` when the username is taken (the existing
    account is left untouched) and ``ConfigurationError`` when the role
    table has not been seeded.
    """
    if await find_by_username(db, data.username) is not None:
        raise ConflictError(f"Username {data.username!r} already exists")

    role = (await db.execute(select(Role).where(Role.name == DEFAULT_USER_ROLE))).scalar_one_or_none()
    if role is None:
        raise ConfigurationError(f"{DEFAULT_USER_ROLE} does not exist; seed the roles table")

    user = User(
        username=data.username,
        password_hash=hash_password(data.password),
        enabled=True,
        roles=[role],
    )
    await save_user(db, user)
    logger.info("Registered user %s", user.username)
    return user


async def authenticate_credentials(db: AsyncSession, data: Credentials) -> User:
    """
    Return the user matching *data* or raise ``AuthError``.

    An unknown username and a wrong password raise the same reason so the
    response cannot be used to tell which usernames exist.
    """
    user = await find_by_username(db, data.username)
    if not verify_password(data.password, user.password_hash if user else None):
        raise AuthError(AuthFailure.UNKNOWN, "Invalid credentials")
    if not user.enabled:
        raise AuthError(AuthFailure.DISABLED, "Account disabled")
    return user


async def get_users(db: AsyncSession, username: str | None = None) -> list[dict]:
    """
    Return users ordered by id, optionally filtered by a username
    substring.
    """
    q = select(User).options(selectinload(User.roles)).order_by(User.id)
    if username:
        q = q.where(User.username.contains(username, autoescape=True))
    result = await db.execute(q)
    return [user_to_dict(u) for u in result.scalars().all()]


async def get_user(db: AsyncSession, user_id: int) -> dict | None:
    q = select(User).where(User.id == user_id).options(selectinload(User.roles))
    user = (await db.execute(q)).scalar_one_or_none()
    if user is None:
        return None
    return user_to_dict(user)


async def disable_user(db: AsyncSession, user_id: int) -> bool:
    """
    Deactivate the account; existing tokens stop working on the next
    request because the gate checks ``enabled``.  Returns False when the
    user does not exist.
    """
    user = await db.get(User, user_id)
    if user is None:
        return False
    user.enabled = False
    await db.flush()
    logger.info("Disabled user %s", user.username)
    return True


async def update_user(db: AsyncSession, user_id: int, data: UserUpdate) -> dict | None:
    """
    Apply the fields set in *data* to *user_id*; re-enabling a disabled
    account goes through here.  A new password is hashed, a taken username
    raises ``ConflictError``.  Returns None when the user does not exist.

    Tokens carry the username, so renaming an account invalidates the
    tokens issued under the old name.
    """
    q = select(User).where(User.id == user_id).options(selectinload(User.roles))
    user = (await db.execute(q)).scalar_one_or_none()
    if user is None:
        return None

    if data.username is not None and data.username != user.username:
        if await find_by_username(db, data.username) is not None:
            raise ConflictError(f"Username {data.username!r} already exists")
        user.username = data.username
    if data.password is not None:
        user.password_hash = hash_password(data.password)
    if data.enabled is not None:
        user.enabled = data.enabled

    await save_user(db, user)
    logger.info("Updated user %d (%s)", user.id, user.username)
    return user_to_dict(user)
