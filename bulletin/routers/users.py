from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from bulletin.database import get_db
from bulletin.dependencies import get_current_identity
from bulletin.schemas import UserRegister, UserResponse, UserUpdate
from bulletin.security.identity import Identity
from bulletin.services import user_service

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("", response_model=list[UserResponse])
async def list_users(
    username: str | None = Query(None, description="Username substring filter."),
    db: AsyncSession = Depends(get_db),
):
    return await user_service.get_users(db, username)


@router.post("", status_code=201, response_model=UserResponse)
async def create_user(data: UserRegister, db: AsyncSession = Depends(get_db)):
    user = await user_service.register_user(db, data)
    return user_service.user_to_dict(user)


@router.get("/me", response_model=UserResponse)
async def get_me(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.get_user(db, identity.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, db: AsyncSession = Depends(get_db)):
    user = await user_service.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(user_id: int, data: UserUpdate, db: AsyncSession = Depends(get_db)):
    user = await user_service.update_user(db, user_id, data)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.delete("/{user_id}", status_code=204)
async def disable_user(user_id: int, db: AsyncSession = Depends(get_db)):
    if not await user_service.disable_user(db, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return Response(status_code=204)
