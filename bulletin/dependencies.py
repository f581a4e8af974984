from fastapi import HTTPException, Query, Request

from bulletin.config import settings
from bulletin.security.identity import Identity
from bulletin.security.tokens import TokenService
from bulletin.storage import LocalBlobStore


class PaginationParams:
    """
    Reusable FastAPI dependency that parses the listing query parameters.

    Attributes
    ----------
    search_text:
        Optional substring matched against title or content.
    page:
        Zero-based page index.
    page_size:
        Number of items per page, clamped to ``settings.MAX_PAGE_SIZE``.
    """

    def __init__(
        self,
        search_text: str | None = Query(
            None,
            description="Substring to look for in the title or content.",
        ),
        page: int = Query(
            0,
            ge=0,
            description="Page index (0-based).",
        ),
        page_size: int = Query(
            settings.DEFAULT_PAGE_SIZE,
            ge=1,
            le=100,
            description="Number of items returned per page (max 100).",
        ),
    ) -> None:
        self.search_text = search_text or None
        self.page = page
        self.page_size = min(page_size, settings.MAX_PAGE_SIZE)


def get_current_identity(request: Request) -> Identity:
    """
    The caller resolved by the auth gate.

    Only reachable as None on routes the policy marks public, which must
    not depend on this.
    """
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(settings.UPLOAD_DIR)
