from typing import Type

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from bulletin.config import settings
from bulletin.database import get_db
from bulletin.dependencies import PaginationParams, get_blob_store, get_current_identity
from bulletin.exceptions import FieldError, ValidationError
from bulletin.schemas import ArticleCreate, ArticleDetail, ArticleUpdate, ArticleWrite, PaginatedResponse
from bulletin.security.identity import Identity
from bulletin.services import article_service, attachment_service
from bulletin.storage import LocalBlobStore

router = APIRouter(prefix="/api/articles", tags=["articles"])


def _parse_article_part(raw: str, schema: Type[ArticleWrite]) -> ArticleWrite:
    """Decode the JSON ``article`` part of a multipart request."""
    try:
        return schema.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError([
            FieldError(
                ".".join(str(p) for p in err["loc"]) or "article",
                "invalid",
                err["msg"],
            )
            for err in exc.errors()
        ])


@router.get("", response_model=PaginatedResponse)
async def list_articles(
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_articles(
        db, pagination.search_text, pagination.page, pagination.page_size
    )


@router.get("/{article_id}", response_model=ArticleDetail)
async def get_article(article_id: int, db: AsyncSession = Depends(get_db)):
    article = await article_service.get_article(db, article_id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@router.post("", status_code=201, response_model=ArticleDetail)
async def create_article(
    article: str = Form(..., description="Article fields as a JSON document."),
    files: list[UploadFile] | None = File(None),
    identity: Identity = Depends(get_current_identity),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    db: AsyncSession = Depends(get_db),
):
    data = _parse_article_part(article, ArticleCreate)
    return await article_service.create_article(db, data, identity, files or [], blob_store)


@router.put("/{article_id}", response_model=ArticleDetail)
async def update_article(
    article_id: int,
    article: str = Form(..., description="Article fields as a JSON document."),
    files: list[UploadFile] | None = File(None),
    identity: Identity = Depends(get_current_identity),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    db: AsyncSession = Depends(get_db),
):
    data = _parse_article_part(article, ArticleUpdate)
    updated = await article_service.update_article(
        db, article_id, data, identity, files or [], blob_store
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Article not found")
    return updated


@router.delete("/{article_id}", status_code=204)
async def delete_article(article_id: int, db: AsyncSession = Depends(get_db)):
    deleted = await article_service.delete_article(db, article_id)
    if not deleted and not settings.ARTICLE_DELETE_MISSING_OK:
        raise HTTPException(status_code=404, detail="Article not found")
    return Response(status_code=204)


@router.delete("/{article_id}/files/{file_id}", status_code=204)
async def detach_file(article_id: int, file_id: int, db: AsyncSession = Depends(get_db)):
    detached = await attachment_service.detach_file(db, article_id, file_id)
    if not detached:
        raise HTTPException(status_code=404, detail="File not found")
    return Response(status_code=204)
