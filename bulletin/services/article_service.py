"""
Article service: the publication window engine.

Design notes
------------
- An article is listed only while ``start_date < now < end_date``; ``now``
  is captured once per call and every query of that call uses it.
  Articles missing either date are left out unless
  ``INCLUDE_UNDATED_ARTICLES`` is set, in which case a missing start means
  "already started" and a missing end means "never ends".
- Listing order is ``id DESC``.  Ids are assigned monotonically, so the
  order is total and repeated calls page identically.
- Listing pages go through the Redis cache-aside layer.  A cached page
  lives at most ``CACHE_TTL_LIST`` seconds and never past the next
  moment any article enters or leaves its window.  Every write drops all
  cached pages once its transaction has committed.
- Detail reads are never cached: each one bumps ``read_count`` with a
  single ``UPDATE ... SET read_count = read_count + 1`` so concurrent
  readers cannot lose increments.
- Service functions flush but do not commit; the transaction boundary
  is owned by the ``get_db`` dependency in the router layer.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Sequence

from fastapi import UploadFile
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload, selectinload

from bulletin.cache import cache
from bulletin.config import settings
from bulletin.database import on_commit
from bulletin.models import Article
from bulletin.schemas import ArticleCreate, ArticleUpdate, PaginatedResponse
from bulletin.security.identity import Identity
from bulletin.services import attachment_service
from bulletin.storage import LocalBlobStore
from bulletin.validators import as_utc, validate_article

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Query building blocks
# ---------------------------------------------------------------------------

def visibility_window(now: datetime, include_undated: bool | None = None):
    """SQL condition selecting the articles visible at *now*."""
    if include_undated is None:
        include_undated = settings.INCLUDE_UNDATED_ARTICLES
    if include_undated:
        return and_(
            or_(Article.start_date.is_(None), Article.start_date < now),
            or_(Article.end_date.is_(None), Article.end_date > now),
        )
    return and_(Article.start_date < now, Article.end_date > now)


def search_filter(search_text: str):
    """Substring match on title or content (LIKE, wildcards escaped)."""
    return or_(
        Article.title.contains(search_text, autoescape=True),
        Article.content.contains(search_text, autoescape=True),
    )


async def _next_window_boundary(db: AsyncSession, now: datetime) -> datetime | None:
    """Earliest future start or end date across all articles."""
    starts = select(func.min(Article.start_date)).where(Article.start_date > now)
    ends = select(func.min(Article.end_date)).where(Article.end_date > now)
    candidates = [
        as_utc((await db.execute(starts)).scalar_one_or_none()),
        as_utc((await db.execute(ends)).scalar_one_or_none()),
    ]
    candidates = [c for c in candidates if c is not None]
    return min(candidates) if candidates else None


async def _load_article(db: AsyncSession, article_id: int) -> Article | None:
    """Load the article with owner and files, overwriting any stale state."""
    q = (
        select(Article)
        .where(Article.id == article_id)
        .options(joinedload(Article.user), selectinload(Article.files))
        .execution_options(populate_existing=True)
    )
    return (await db.execute(q)).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _article_to_display_dict(article: Article) -> dict:
    """List view: no dates beyond registration, no files."""
    return {
        "id": article.id,
        "title": article.title,
        "content": article.content,
        "registration_date": _iso(article.registration_date),
        "read_count": article.read_count,
        "username": article.user.username if article.user else None,
    }


def _article_detail_to_dict(article: Article) -> dict:
    return {
        "id": article.id,
        "title": article.title,
        "content": article.content,
        "start_date": _iso(article.start_date),
        "end_date": _iso(article.end_date),
        "registration_date": _iso(article.registration_date),
        "last_update_date": _iso(article.last_update_date),
        "read_count": article.read_count,
        "user": (
            {"id": article.user.id, "username": article.user.username}
            if article.user else None
        ),
        "files": [attachment_service.file_to_dict(f) for f in article.files],
    }


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def list_articles(
    db: AsyncSession,
    search_text: str | None = None,
    page: int = 0,
    page_size: int = 10,
    now: datetime | None = None,
) -> PaginatedResponse:
    """
    Return one page of the articles visible at *now* (defaults to the
    current time), newest first, optionally filtered by *search_text*.

    *page* is zero-based.  Pinning *now* bypasses the cache.
    """
    use_cache = now is None and cache.enabled
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)

    cache_key = (
        f"articles:list:{settings.INCLUDE_UNDATED_ARTICLES:d}:{page}:{page_size}:{search_text or ''}"
    )
    if use_cache:
        cached = await cache.get(cache_key)
        if cached:
            return PaginatedResponse(**cached)

    condition = visibility_window(now)
    if search_text:
        condition = and_(condition, search_filter(search_text))

    count_q = select(func.count()).select_from(Article).where(condition)
    total: int = (await db.execute(count_q)).scalar_one()

    articles_q = (
        select(Article)
        .where(condition)
        .options(joinedload(Article.user))
        .order_by(Article.id.desc())
        .offset(page * page_size)
        .limit(page_size)
    )
    articles = (await db.execute(articles_q)).scalars().all()

    response = PaginatedResponse(
        items=[_article_to_display_dict(a) for a in articles],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total > 0 else 0,
    )

    if use_cache:
        ttl = settings.CACHE_TTL_LIST
        boundary = await _next_window_boundary(db, now)
        if boundary is not None:
            ttl = min(ttl, int((boundary - now).total_seconds()))
        await cache.set(cache_key, response.model_dump(), ttl=ttl)
    return response


async def get_article(db: AsyncSession, article_id: int) -> dict | None:
    """
    Return the detail dict for *article_id*, counting the read.

    Every successful call increments ``read_count`` by one; there is no
    de-duplication of repeated views.  Returns None when the article does
    not exist.
    """
    bump = (
        update(Article)
        .where(Article.id == article_id)
        # Assigning last_update_date to itself keeps its onupdate from firing.
        .values(
            read_count=Article.read_count + 1,
            last_update_date=Article.last_update_date,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(bump)
    if result.rowcount == 0:
        return None

    article = await _load_article(db, article_id)
    return _article_detail_to_dict(article)


async def create_article(
    db: AsyncSession,
    data: ArticleCreate,
    owner: Identity,
    uploads: Sequence[UploadFile] = (),
    blob_store: LocalBlobStore | None = None,
) -> dict:
    """
    Validate and insert a new article owned by *owner*, attaching any
    *uploads*.  Timestamps come from the database, ``read_count`` starts
    at zero.
    """
    validate_article(data)

    article = Article(
        title=data.title,
        content=data.content,
        start_date=as_utc(data.start_date),
        end_date=as_utc(data.end_date),
        read_count=0,
        user_id=owner.user_id,
    )
    if uploads:
        files = await attachment_service.store_uploads(blob_store, uploads, owner.username)
        attachment_service.attach_all(article, files)

    db.add(article)
    await db.flush()
    logger.info("Article %d created by %s with %d file(s)", article.id, owner.username, len(article.files))

    on_commit(db, cache.invalidate_article_lists)
    return _article_detail_to_dict(await _load_article(db, article.id))


async def update_article(
    db: AsyncSession,
    article_id: int,
    data: ArticleUpdate,
    editor: Identity,
    uploads: Sequence[UploadFile] = (),
    blob_store: LocalBlobStore | None = None,
) -> dict | None:
    """
    Replace title, content and dates of *article_id* and append *uploads*.

    The article is reassigned to *editor*; ``read_count`` and
    ``registration_date`` are left alone.  Returns None when the article
    does not exist.
    """
    validate_article(data)

    article = await _load_article(db, article_id)
    if article is None:
        return None

    article.title = data.title
    article.content = data.content
    article.start_date = as_utc(data.start_date)
    article.end_date = as_utc(data.end_date)
    if article.user_id != editor.user_id:
        logger.info("Article %d reassigned from user %s to %s", article_id, article.user_id, editor.user_id)
    article.user_id = editor.user_id

    if uploads:
        files = await attachment_service.store_uploads(blob_store, uploads, editor.username)
        attachment_service.attach_all(article, files)

    await db.flush()
    on_commit(db, cache.invalidate_article_lists)
    return _article_detail_to_dict(await _load_article(db, article_id))


async def delete_article(db: AsyncSession, article_id: int) -> bool:
    """
    Delete *article_id* and, through the cascade, all of its files.

    Returns False when the article does not exist.
    """
    q = (
        select(Article)
        .where(Article.id == article_id)
        .options(selectinload(Article.files))
    )
    article = (await db.execute(q)).scalar_one_or_none()
    if article is None:
        return False

    await db.delete(article)
    await db.flush()
    logger.info("Article %d deleted", article_id)
    on_commit(db, cache.invalidate_article_lists)
    return True
