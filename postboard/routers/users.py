from fastapi import APIRouter, Depends, File, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from postboard.database import get_db
from postboard.dependencies import get_current_user_id
from postboard.errors import unwrap
from postboard.schemas import (
    AvatarResponse,
    MessageResponse,
    PasswordChange,
    ProfileUpdate,
    UserCreate,
    UserResponse,
)
from postboard.services import user_service

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=UserResponse)
async def register(data: UserCreate, db: AsyncSession = Depends(get_db)):
    return unwrap(await user_service.register(db, data))


@router.get("/me", response_model=UserResponse)
async def get_me(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await user_service.get_profile(db, user_id))


@router.patch("/me", response_model=UserResponse)
async def update_me(
    data: ProfileUpdate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await user_service.update_profile(db, user_id, data))


@router.post("/me/password", response_model=MessageResponse)
async def change_password(
    data: PasswordChange,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    unwrap(await user_service.change_password(db, user_id, data))
    return {"message": "Password changed"}


@router.post("/me/avatar", response_model=AvatarResponse)
async def upload_avatar(
    file: UploadFile = File(..., description="JPG, PNG or GIF image."),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    result = unwrap(await user_service.upload_avatar(db, user_id, file))
    return {"url": result["url"], "message": "Avatar uploaded"}
