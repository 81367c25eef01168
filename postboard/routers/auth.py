from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from postboard.database import get_db
from postboard.dependencies import get_current_user_id
from postboard.errors import unwrap
from postboard.schemas import LoginRequest, TokenResponse
from postboard.services import user_service

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    return unwrap(await user_service.login(db, data))


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await user_service.refresh_token(db, user_id))
