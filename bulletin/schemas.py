from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# --- Auth ---

class Credentials(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    # bcrypt only looks at the first 72 bytes
    password: str = Field(min_length=1, max_length=72)


class UserRegister(Credentials):
    password: str = Field(min_length=4, max_length=72)


class UserUpdate(BaseModel):
    """Admin edit of an account; omitted fields are left unchanged."""

    username: str | None = Field(None, min_length=1, max_length=100)
    password: str | None = Field(None, min_length=4, max_length=72)
    enabled: bool | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


# --- User ---

class UserResponse(BaseModel):
    id: int
    username: str
    enabled: bool
    roles: list[str] = []
    created_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


class RegistrationResponse(TokenResponse):
    user: UserResponse


# --- File ---

class FileResponse(BaseModel):
    id: int
    file_name: str
    storage_path: str
    size: int
    mime_type: str
    upload_timestamp: datetime | None
    uploaded_by: str | None
    model_config = ConfigDict(from_attributes=True)


# --- Article ---

class ArticleWrite(BaseModel):
    """
    Body of the ``article`` part for create and update.

    Title / content / date rules are checked by ``bulletin.validators`` so
    every violation is reported with its field and code in one response.
    """

    title: str | None = None
    content: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class ArticleCreate(ArticleWrite):
    pass


class ArticleUpdate(ArticleWrite):
    pass


class ArticleAuthor(BaseModel):
    id: int
    username: str


class ArticleDisplay(BaseModel):
    id: int
    title: str
    content: str
    registration_date: datetime | None
    read_count: int
    username: str | None


class ArticleDetail(BaseModel):
    id: int
    title: str
    content: str
    start_date: datetime | None
    end_date: datetime | None
    registration_date: datetime | None
    last_update_date: datetime | None
    read_count: int
    user: ArticleAuthor | None = None
    files: list[FileResponse] = []


# --- Pagination ---

class PaginatedResponse(BaseModel):
    items: list[ArticleDisplay]
    total: int
    page: int
    page_size: int
    pages: int
