"""
Attachment service: keeps every File bound to exactly one Article.

Both sides of the Article/File relationship are maintained by the ORM
``back_populates`` pair, so appending to ``article.files`` also sets
``file.article`` and removing clears it in the same call.  The
``delete-orphan`` cascade turns removal into deletion on the next flush,
and everything happens inside the caller's session transaction.
"""
import logging
from typing import Iterable

from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bulletin.exceptions import StorageError
from bulletin.models import Article, File
from bulletin.storage import FileMetadata, LocalBlobStore, clean_file_name

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def attach(article: Article, file: File) -> None:
    if file not in article.files:
        article.files.append(file)


def detach(article: Article, file: File) -> None:
    article.files.remove(file)


def attach_all(article: Article, files: Iterable[File]) -> None:
    for file in files:
        attach(article, file)


def file_to_dict(file: File) -> dict:
    return {
        "id": file.id,
        "file_name": file.file_name,
        "storage_path": file.storage_path,
        "size": file.size,
        "mime_type": file.mime_type,
        "upload_timestamp": file.upload_timestamp.isoformat() if file.upload_timestamp else None,
        "uploaded_by": file.uploaded_by,
    }


async def store_uploads(
    blob_store: LocalBlobStore,
    uploads: Iterable[UploadFile],
    uploaded_by: str,
) -> list[File]:
    """
    Hand each non-empty upload to *blob_store* and build an unattached
    ``File`` for it.  Only metadata is recorded; *uploaded_by* is the
    resolved caller, never a client-supplied value.

    Every file name is checked before the first byte is written.  If the
    store fails part-way, the blobs already written for this call are
    removed again before the ``StorageError`` propagates.
    """
    pending: list[tuple[FileMetadata, bytes]] = []
    for upload in uploads:
        data = await upload.read()
        if not data:
            continue
        pending.append((
            FileMetadata(
                file_name=clean_file_name(upload.filename or ""),
                size=len(data),
                mime_type=upload.content_type or DEFAULT_MIME_TYPE,
                uploaded_by=uploaded_by,
            ),
            data,
        ))

    files: list[File] = []
    try:
        for metadata, data in pending:
            path = await blob_store.store(data, metadata)
            files.append(File(
                file_name=metadata.file_name,
                storage_path=path,
                size=metadata.size,
                mime_type=metadata.mime_type,
                uploaded_by=metadata.uploaded_by,
            ))
    except StorageError:
        logger.error("Blob store failed after %d of %d file(s); removing them", len(files), len(pending))
        for file in files:
            await blob_store.delete(file.storage_path)
        raise
    return files


async def detach_file(db: AsyncSession, article_id: int, file_id: int) -> bool:
    """
    Remove *file_id* from article *article_id*; the row is deleted by the
    orphan-removal cascade.  Returns False when either does not exist or
    the file belongs to another article.
    """
    q = (
        select(Article)
        .where(Article.id == article_id)
        .options(selectinload(Article.files))
    )
    article = (await db.execute(q)).scalar_one_or_none()
    if article is None:
        return False

    file = next((f for f in article.files if f.id == file_id), None)
    if file is None:
        return False

    detach(article, file)
    await db.flush()
    logger.info("Detached file %d from article %d", file_id, article_id)
    return True
