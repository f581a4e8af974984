"""
Service-layer tests: exercise article, attachment and user services
directly against the test database, without going through HTTP.

``list_articles`` is called with an explicit ``now`` throughout, which
pins the window and bypasses the cache.
"""
import io
import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import Headers, UploadFile

from bulletin.config import settings
from bulletin.exceptions import (
    AuthError,
    AuthFailure,
    ConfigurationError,
    ConflictError,
    StorageError,
    ValidationError,
)
from bulletin.models import Article, File, Role, User, user_roles
from bulletin.schemas import ArticleCreate, ArticleUpdate, Credentials, UserRegister
from bulletin.security.gate import authenticate
from bulletin.security.identity import Identity
from bulletin.security.tokens import TokenService
from bulletin.services import article_service, attachment_service, user_service
from bulletin.storage import FileMetadata, LocalBlobStore, clean_file_name
from bulletin.validators import validate_article

NOW = datetime(2026, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


async def _make_user(db: AsyncSession, username: str = "alice") -> Identity:
    user = await user_service.register_user(db, UserRegister(username=username, password="pw1234"))
    return Identity(user_id=user.id, username=user.username, roles=user.role_names)


async def _make_article(db: AsyncSession, title: str, start, end, user_id=None) -> Article:
    article = Article(title=title, content=f"{title} body", start_date=start, end_date=end,
                      read_count=0, user_id=user_id)
    db.add(article)
    await db.flush()
    return article


def _upload(name: str, data: bytes, content_type: str = "text/plain") -> UploadFile:
    return UploadFile(
        file=io.BytesIO(data), filename=name, headers=Headers({"content-type": content_type})
    )


async def _titles(db: AsyncSession, **kwargs) -> list[str]:
    page = await article_service.list_articles(db, now=NOW, **kwargs)
    return [item.title for item in page.items]


# ---------------------------------------------------------------------------
# Publication window
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_window_bounds_are_exclusive(db_session: AsyncSession):
    await _make_article(db_session, "inside", NOW - DAY, NOW + DAY)
    await _make_article(db_session, "starts now", NOW, NOW + DAY)
    await _make_article(db_session, "ends now", NOW - DAY, NOW)
    await _make_article(db_session, "expired", NOW - 3 * DAY, NOW - 2 * DAY)
    await _make_article(db_session, "upcoming", NOW + DAY, NOW + 2 * DAY)

    assert await _titles(db_session) == ["inside"]


@pytest.mark.asyncio
async def test_undated_articles_excluded_by_default(db_session: AsyncSession):
    await _make_article(db_session, "dated", NOW - DAY, NOW + DAY)
    await _make_article(db_session, "no start", None, NOW + DAY)
    await _make_article(db_session, "no end", NOW - DAY, None)
    await _make_article(db_session, "no dates", None, None)

    assert await _titles(db_session) == ["dated"]


@pytest.mark.asyncio
async def test_undated_articles_included_when_configured(db_session: AsyncSession, monkeypatch):
    monkeypatch.setattr(settings, "INCLUDE_UNDATED_ARTICLES", True)
    await _make_article(db_session, "dated", NOW - DAY, NOW + DAY)
    await _make_article(db_session, "no start", None, NOW + DAY)
    await _make_article(db_session, "no end", NOW - DAY, None)
    await _make_article(db_session, "no dates", None, None)
    await _make_article(db_session, "future, no end", NOW + DAY, None)
    await _make_article(db_session, "no start, ended", None, NOW - DAY)

    assert await _titles(db_session) == ["no dates", "no end", "no start", "dated"]


@pytest.mark.asyncio
async def test_search_is_combined_with_window(db_session: AsyncSession):
    await _make_article(db_session, "visible match", NOW - DAY, NOW + DAY)
    await _make_article(db_session, "expired match", NOW - 3 * DAY, NOW - DAY)
    await _make_article(db_session, "visible other", NOW - DAY, NOW + DAY)

    assert await _titles(db_session, search_text="match") == ["visible match"]


@pytest.mark.asyncio
async def test_pages_partition_the_listing(db_session: AsyncSession):
    for i in range(7):
        await _make_article(db_session, f"n{i}", NOW - DAY, NOW + DAY)

    seen = []
    for page in range(3):
        seen += await _titles(db_session, page=page, page_size=3)
    assert seen == [f"n{i}" for i in reversed(range(7))]
    assert await _titles(db_session, page=3, page_size=3) == []


# ---------------------------------------------------------------------------
# Read count
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_article_increments_read_count(db_session: AsyncSession):
    article = await _make_article(db_session, "read me", NOW - DAY, NOW + DAY)
    for _ in range(4):
        detail = await article_service.get_article(db_session, article.id)
    assert detail["read_count"] == 4

    stored = await db_session.scalar(select(Article.read_count).where(Article.id == article.id))
    assert stored == 4


@pytest.mark.asyncio
async def test_get_missing_article_returns_none(db_session: AsyncSession):
    assert await article_service.get_article(db_session, 12345) is None


# ---------------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_article_records_owner_and_uploads(db_session: AsyncSession, blob_store):
    alice = await _make_user(db_session)
    data = ArticleCreate(title="Fire drill", content="Tuesday 10am",
                         start_date=datetime.now(timezone.utc) - DAY,
                         end_date=datetime.now(timezone.utc) + DAY)

    detail = await article_service.create_article(
        db_session, data, alice, [_upload("map.png", b"\x89PNG", "image/png")], blob_store
    )
    assert detail["user"] == {"id": alice.user_id, "username": "alice"}
    assert detail["read_count"] == 0
    assert detail["files"][0]["uploaded_by"] == "alice"
    assert detail["files"][0]["mime_type"] == "image/png"


@pytest.mark.asyncio
async def test_create_article_validates_before_storing(db_session: AsyncSession, blob_store):
    alice = await _make_user(db_session)
    data = ArticleCreate(title="", content="x")

    with pytest.raises(ValidationError):
        await article_service.create_article(
            db_session, data, alice, [_upload("a.txt", b"a")], blob_store
        )
    assert await db_session.scalar(select(func.count()).select_from(Article)) == 0
    assert not blob_store.root.exists()


@pytest.mark.asyncio
async def test_update_missing_article_returns_none(db_session: AsyncSession):
    alice = await _make_user(db_session)
    data = ArticleUpdate(title="Hello", content="x")
    assert await article_service.update_article(db_session, 999, data, alice) is None


@pytest.mark.asyncio
async def test_delete_article_cascades_to_files(db_session: AsyncSession, blob_store):
    alice = await _make_user(db_session)
    data = ArticleCreate(title="Doomed", content="x")
    detail = await article_service.create_article(
        db_session, data, alice, [_upload("a.txt", b"a"), _upload("b.txt", b"b")], blob_store
    )
    assert await db_session.scalar(select(func.count()).select_from(File)) == 2

    assert await article_service.delete_article(db_session, detail["id"]) is True
    assert await db_session.scalar(select(func.count()).select_from(File)) == 0
    assert await article_service.delete_article(db_session, detail["id"]) is False


# ---------------------------------------------------------------------------
# Attachment invariant
# ---------------------------------------------------------------------------

def _file(name: str) -> File:
    return File(file_name=name, storage_path=f"/tmp/{name}", size=1, mime_type="text/plain")


def test_attach_sets_both_sides():
    article = Article(title="t", content="c")
    file = _file("a.txt")

    attachment_service.attach(article, file)
    assert file in article.files
    assert file.article is article

    attachment_service.attach(article, file)
    assert article.files.count(file) == 1


def test_detach_clears_both_sides():
    article = Article(title="t", content="c")
    file = _file("a.txt")
    attachment_service.attach(article, file)

    attachment_service.detach(article, file)
    assert file not in article.files
    assert file.article is None


@pytest.mark.asyncio
async def test_detached_file_is_deleted_on_flush(db_session: AsyncSession):
    article = Article(title="t", content="c", read_count=0)
    attachment_service.attach_all(article, [_file("a.txt"), _file("b.txt")])
    db_session.add(article)
    await db_session.flush()
    file_id = article.files[0].id

    assert await attachment_service.detach_file(db_session, article.id, file_id) is True
    assert await db_session.get(File, file_id) is None
    assert await db_session.scalar(select(func.count()).select_from(File)) == 1


@pytest.mark.asyncio
async def test_detach_file_unknown_ids(db_session: AsyncSession):
    article = await _make_article(db_session, "t", None, None)
    assert await attachment_service.detach_file(db_session, 999, 1) is False
    assert await attachment_service.detach_file(db_session, article.id, 999) is False


# ---------------------------------------------------------------------------
# Validation rules
# ---------------------------------------------------------------------------

def _errors(**fields) -> set[str]:
    data = ArticleCreate(**{"title": "Valid", "content": "Body", **fields})
    try:
        validate_article(data, now=NOW)
    except ValidationError as exc:
        return {e.code for e in exc.errors}
    return set()


def test_valid_article_passes():
    assert _errors(start_date=NOW - DAY, end_date=NOW + DAY) == set()


def test_start_equal_to_end_is_allowed():
    assert _errors(start_date=NOW + DAY, end_date=NOW + DAY) == set()


def test_end_equal_to_now_is_not_past():
    assert _errors(end_date=NOW) == set()


def test_naive_dates_are_treated_as_utc():
    naive_past = (NOW - DAY).replace(tzinfo=None)
    assert _errors(end_date=naive_past) == {"endDate.past"}


def test_multiple_rules_reported_together():
    assert _errors(title=None, content="  ", start_date=NOW - DAY, end_date=NOW - 2 * DAY) == {
        "title.empty", "content.empty", "startDate.invalid", "endDate.past",
    }


# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("name", ["../etc/passwd", "a/b.txt", "a\\b.txt", "", "   ", ".", "..", "x\x00y"])
def test_clean_file_name_rejects_path_sequences(name: str):
    with pytest.raises(ValidationError) as exc_info:
        clean_file_name(name)
    assert exc_info.value.errors[0].code == "fileName.invalid"
    assert exc_info.value.errors[0].field == "files"


@pytest.mark.parametrize("name", ["report.final.pdf", "v1..2.txt", "...notes", ".env"])
def test_clean_file_name_accepts_plain_names(name: str):
    assert clean_file_name(f" {name} ") == name


@pytest.mark.asyncio
async def test_blob_store_writes_under_root(blob_store: LocalBlobStore):
    path = await blob_store.store(b"data", FileMetadata("notes.txt", 4, "text/plain"))
    assert path.startswith(str(blob_store.root))
    assert path.endswith("_notes.txt")
    with open(path, "rb") as fh:
        assert fh.read() == b"data"


@pytest.mark.asyncio
async def test_blob_store_os_failure_is_storage_error(tmp_path):
    not_a_dir = tmp_path / "occupied"
    not_a_dir.write_text("x")
    store = LocalBlobStore(not_a_dir)
    with pytest.raises(StorageError):
        await store.store(b"data", FileMetadata("a.txt", 4, "text/plain"))


# ---------------------------------------------------------------------------
# User service / credential store
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_duplicate_raises_conflict(db_session: AsyncSession):
    await _make_user(db_session, "alice")
    with pytest.raises(ConflictError):
        await user_service.register_user(db_session, UserRegister(username="alice", password="other"))


@pytest.mark.asyncio
async def test_register_without_seeded_role(db_session: AsyncSession):
    await db_session.execute(delete(user_roles))
    await db_session.execute(delete(Role))
    with pytest.raises(ConfigurationError):
        await user_service.register_user(db_session, UserRegister(username="alice", password="pw1234"))


@pytest.mark.asyncio
async def test_ensure_roles_is_idempotent(db_session: AsyncSession):
    await user_service.ensure_roles(db_session, settings.DEFAULT_ROLES)
    count = await db_session.scalar(select(func.count()).select_from(Role))
    assert count == len(settings.DEFAULT_ROLES)


@pytest.mark.asyncio
async def test_authenticate_credentials(db_session: AsyncSession):
    await _make_user(db_session, "alice")

    user = await user_service.authenticate_credentials(
        db_session, Credentials(username="alice", password="pw1234")
    )
    assert user.username == "alice"

    reasons = []
    for creds in (Credentials(username="alice", password="wrong"),
                  Credentials(username="nobody", password="pw1234")):
        with pytest.raises(AuthError) as exc_info:
            await user_service.authenticate_credentials(db_session, creds)
        reasons.append((exc_info.value.reason, str(exc_info.value)))
    assert reasons[0] == reasons[1] == (AuthFailure.UNKNOWN, "Invalid credentials")


@pytest.mark.asyncio
async def test_authenticate_credentials_disabled(db_session: AsyncSession):
    alice = await _make_user(db_session, "alice")
    assert await user_service.disable_user(db_session, alice.user_id) is True

    with pytest.raises(AuthError) as exc_info:
        await user_service.authenticate_credentials(
            db_session, Credentials(username="alice", password="pw1234")
        )
    assert exc_info.value.reason is AuthFailure.DISABLED


# ---------------------------------------------------------------------------
# Gate authentication
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_authenticate_resolves_identity(db_session: AsyncSession, token_service: TokenService):
    alice = await _make_user(db_session, "alice")
    identity = await authenticate(
        db_session, token_service, f"Bearer {token_service.issue('alice').value}"
    )
    assert identity == Identity(user_id=alice.user_id, username="alice", roles=frozenset({"ROLE_USER"}))


@pytest.mark.asyncio
async def test_authenticate_empty_bearer_is_malformed(db_session: AsyncSession, token_service: TokenService):
    with pytest.raises(AuthError) as exc_info:
        await authenticate(db_session, token_service, "Bearer ")
    assert exc_info.value.reason is AuthFailure.MALFORMED


@pytest.mark.asyncio
async def test_disabled_user_lookup(db_session: AsyncSession, token_service: TokenService):
    alice = await _make_user(db_session, "alice")
    user = await db_session.get(User, alice.user_id)
    user.enabled = False
    await db_session.flush()

    with pytest.raises(AuthError) as exc_info:
        await authenticate(db_session, token_service, f"Bearer {token_service.issue('alice').value}")
    assert exc_info.value.reason is AuthFailure.DISABLED


# ---------------------------------------------------------------------------
# Upload staging
# ---------------------------------------------------------------------------

class FailingBlobStore(LocalBlobStore):
    """Stores normally until *fail_on* writes have happened, then fails."""

    def __init__(self, root, fail_on: int) -> None:
        super().__init__(root)
        self.fail_on = fail_on
        self.calls = 0

    async def store(self, data: bytes, metadata: FileMetadata) -> str:
        self.calls += 1
        if self.calls > self.fail_on:
            raise StorageError("disk full")
        return await super().store(data, metadata)


@pytest.mark.asyncio
async def test_store_uploads_checks_every_name_first(blob_store: LocalBlobStore):
    uploads = [_upload("ok.txt", b"ok"), _upload("../evil.txt", b"evil")]
    with pytest.raises(ValidationError):
        await attachment_service.store_uploads(blob_store, uploads, "alice")
    assert not blob_store.root.exists()


@pytest.mark.asyncio
async def test_store_uploads_removes_partial_writes(tmp_path):
    store = FailingBlobStore(tmp_path / "uploads", fail_on=2)
    uploads = [_upload("a.txt", b"a"), _upload("b.txt", b"b"), _upload("c.txt", b"c")]
    with pytest.raises(StorageError):
        await attachment_service.store_uploads(store, uploads, "alice")
    assert list(store.root.iterdir()) == []


@pytest.mark.asyncio
async def test_blob_store_delete_is_idempotent(blob_store: LocalBlobStore):
    path = await blob_store.store(b"data", FileMetadata("notes.txt", 4, "text/plain"))
    await blob_store.delete(path)
    await blob_store.delete(path)
    assert not os.path.exists(path)
