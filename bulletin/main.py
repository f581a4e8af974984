import logging
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from bulletin.cache import cache
from bulletin.config import settings
from bulletin.database import async_session
from bulletin.exceptions import (
    ConfigurationError,
    ConflictError,
    StorageError,
    ValidationError,
)
from bulletin.middleware import RequestMetricsMiddleware
from bulletin.routers import articles, auth, users
from bulletin.security.gate import AuthGateMiddleware
from bulletin.security.policy import default_policy
from bulletin.security.tokens import TokenService
from bulletin.services import user_service

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_token_service() -> TokenService:
    secret = settings.JWT_SECRET_KEY
    if not secret:
        logger.warning(
            "JWT_SECRET_KEY is not set; using a random per-process key. "
            "Tokens will not survive a restart or work across instances."
        )
        secret = secrets.token_urlsafe(64)
    return TokenService(
        secret,
        algorithm=settings.JWT_ALGORITHM,
        ttl=timedelta(seconds=settings.ACCESS_TOKEN_TTL_SECONDS),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    try:
        await cache.connect()
    except Exception as exc:
        logger.warning("Cache unavailable, continuing without it: %s", exc)
    async with app.state.session_factory() as session:
        await user_service.ensure_roles(session, settings.DEFAULT_ROLES)
        await session.commit()
    yield
    # Shutdown
    await cache.disconnect()


app = FastAPI(
    title="Bulletin Board API",
    description="Time-windowed announcements with attachments behind bearer-token auth",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.session_factory = async_session
app.state.token_service = build_token_service()

# Middleware (last added runs first)
app.add_middleware(AuthGateMiddleware, policy=default_policy)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestMetricsMiddleware)

# Routers
app.include_router(auth.router)
app.include_router(articles.router)
app.include_router(users.router)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.to_list()})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StorageError)
@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: Exception):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage unavailable"})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Server misconfigured"})


@app.get("/health")
async def health():
    return {"status": "healthy", "version": "1.0.0", "cache": cache.stats}
