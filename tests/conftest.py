"""
Test infrastructure for the bulletin board API.

Strategy
--------
- SQLite in-memory via aiosqlite with StaticPool, so every session (the
  request's ``get_db`` session and the auth gate's own lookup session)
  sees the same connection and therefore the same database.
- ``get_db`` is overridden and ``app.state.session_factory`` is pointed at
  the test session factory; the gate reads the factory from app state.
- Tables are created and the default roles seeded before each test, and
  everything is dropped afterwards.
- Redis is disabled (``cache._redis = None``); the CacheManager treats
  that as a permanent miss.
- Uploads land in the test's ``tmp_path`` and bcrypt runs at its minimum
  cost so registration stays fast.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.pool import StaticPool

from bulletin.cache import cache
from bulletin.config import settings
from bulletin.database import Base, commit_session, get_db, rollback_session
from bulletin.dependencies import get_blob_store
from bulletin.main import app
from bulletin.middleware import install_query_counter
from bulletin.models import Role, User
from bulletin.security.tokens import TokenService
from bulletin.services.user_service import ensure_roles
from bulletin.storage import LocalBlobStore

TEST_SECRET_KEY = "test-signing-key-0123456789abcdef0123456789abcdef"
DEFAULT_PASSWORD = "s3cret-pass"

settings.BCRYPT_ROUNDS = 4

# ---------------------------------------------------------------------------
# Test database engine - SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await commit_session(session)
        except Exception:
            await rollback_session(session)
            raise


app.dependency_overrides[get_db] = override_get_db
app.state.session_factory = async_session_test
app.state.token_service = TokenService(TEST_SECRET_KEY)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables and the default roles before each test, drop after."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with async_session_test() as session:
        await ensure_roles(session, settings.DEFAULT_ROLES)
        await session.commit()
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """A live session for seeding data and asserting ORM state directly."""
    async with async_session_test() as session:
        yield session


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "uploads")


@pytest.fixture
def token_service() -> TokenService:
    return app.state.token_service


@pytest_asyncio.fixture
async def async_client(blob_store) -> AsyncClient:
    """httpx client wired to the app through ASGITransport, Redis disabled."""
    cache._redis = None
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_blob_store, None)


@pytest.fixture
def register(async_client: AsyncClient):
    """Return a coroutine that registers *username* and returns the JSON body."""
    async def _register(username: str, password: str = DEFAULT_PASSWORD) -> dict:
        resp = await async_client.post(
            "/register", json={"username": username, "password": password}
        )
        assert resp.status_code == 201, resp.text
        return resp.json()
    return _register


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def auth_headers(register) -> dict:
    """Headers for a freshly registered ROLE_USER account named ``alice``."""
    body = await register("alice")
    return bearer(body["access_token"])


@pytest_asyncio.fixture
async def admin_headers(register, db_session: AsyncSession) -> dict:
    """Headers for ``root``, registered normally and then granted ROLE_ADMIN."""
    body = await register("root")
    user = (await db_session.execute(
        select(User).where(User.username == "root").options(selectinload(User.roles))
    )).scalar_one()
    admin = (await db_session.execute(
        select(Role).where(Role.name == "ROLE_ADMIN")
    )).scalar_one()
    user.roles.append(admin)
    await db_session.commit()
    return bearer(body["access_token"])


def window(start_days: float = -1, end_days: float = 1) -> dict:
    """Publication dates relative to now, as JSON-ready strings."""
    now = datetime.now(timezone.utc)
    return {
        "start_date": (now + timedelta(days=start_days)).isoformat(),
        "end_date": (now + timedelta(days=end_days)).isoformat(),
    }


@pytest.fixture
def post_article(async_client: AsyncClient):
    """
    Return a coroutine that creates an article through the multipart
    endpoint.  *files* is a list of ``(name, bytes, mime)`` tuples.
    """
    async def _post(headers: dict, files=None, expect: int = 201, **fields):
        payload = {"title": "Notice", "content": "Body text", **window(), **fields}
        resp = await async_client.post(
            "/api/articles",
            data={"article": json.dumps(payload)},
            files=[("files", f) for f in files] if files else None,
            headers=headers,
        )
        assert resp.status_code == expect, resp.text
        return resp.json()
    return _post
