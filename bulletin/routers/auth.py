import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from bulletin.database import get_db
from bulletin.dependencies import get_token_service
from bulletin.exceptions import AuthError
from bulletin.schemas import Credentials, RegistrationResponse, TokenResponse, UserRegister
from bulletin.security.tokens import TokenService
from bulletin.services import user_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


@router.post("/register", status_code=201, response_model=RegistrationResponse)
async def register(
    data: UserRegister,
    db: AsyncSession = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    user = await user_service.register_user(db, data)
    token = tokens.issue(user.username)
    return {
        "user": user_service.user_to_dict(user),
        "access_token": token.value,
        "token_type": "bearer",
        "expires_at": token.expires_at,
    }


@router.post("/login", response_model=TokenResponse)
async def login(
    data: Credentials,
    db: AsyncSession = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    try:
        user = await user_service.authenticate_credentials(db, data)
    except AuthError as exc:
        # Same answer for every reason so usernames cannot be enumerated.
        logger.warning("Login failed for %r: %s", data.username, exc.reason.value)
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = tokens.issue(user.username)
    return {"access_token": token.value, "token_type": "bearer", "expires_at": token.expires_at}
