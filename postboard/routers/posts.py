from typing import Annotated

from fastapi import APIRouter, Depends, Path, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from postboard.database import get_db
from postboard.dependencies import PostFilterParams, get_current_user_id, get_optional_user_id
from postboard.errors import unwrap
from postboard.schemas import (
    ID_MAX,
    CommentCreate,
    CommentResponse,
    FavoriteResponse,
    MessageResponse,
    PostCreate,
    PostDetail,
    PostMutationResponse,
    PostSummary,
    PostUpdate,
)
from postboard.services import comment_service, favorite_service, post_service

router = APIRouter(prefix="/api/v1/posts", tags=["posts"])

PostId = Annotated[int, Path(ge=1, le=ID_MAX)]


@router.get("", response_model=list[PostSummary])
async def list_posts(
    filters: PostFilterParams = Depends(),
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await post_service.list_posts(db, requester_id, filters.to_query()))


@router.get("/{post_id}", response_model=PostDetail)
async def get_post(
    post_id: PostId,
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await post_service.get_post(db, post_id, requester_id))


@router.post("", status_code=status.HTTP_201_CREATED, response_model=PostMutationResponse)
async def create_post(
    data: PostCreate,
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    post = unwrap(await post_service.create_post(db, requester_id, data))
    message = "Post published" if post["published"] else "Draft saved"
    return {"message": message, "data": post}


@router.patch("/{post_id}", response_model=PostMutationResponse)
async def update_post(
    post_id: PostId,
    data: PostUpdate,
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    post = unwrap(await post_service.update_post(db, post_id, requester_id, data))
    return {"message": "Post updated", "data": post}


@router.delete("/{post_id}", response_model=MessageResponse)
async def delete_post(
    post_id: PostId,
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    unwrap(await post_service.delete_post(db, post_id, requester_id))
    return {"message": "Post deleted"}


@router.post(
    "/{post_id}/favorite",
    status_code=status.HTTP_201_CREATED,
    response_model=FavoriteResponse,
)
async def favorite_post(
    post_id: PostId,
    response: Response,
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    result = unwrap(await favorite_service.favorite_post(db, post_id, requester_id))
    if result["already_favorited"]:
        response.status_code = status.HTTP_200_OK
        return {"message": "Post already favorited", "already_favorited": True}
    return {"message": "Post favorited", "already_favorited": False}


@router.delete("/{post_id}/favorite", response_model=MessageResponse)
async def unfavorite_post(
    post_id: PostId,
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    unwrap(await favorite_service.unfavorite_post(db, post_id, requester_id))
    return {"message": "Post unfavorited"}


@router.get("/{post_id}/comments", response_model=list[CommentResponse])
async def list_comments(
    post_id: PostId,
    requester_id: int | None = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await comment_service.list_comments(db, post_id, requester_id))


@router.post(
    "/{post_id}/comments",
    status_code=status.HTTP_201_CREATED,
    response_model=CommentResponse,
)
async def add_comment(
    post_id: PostId,
    data: CommentCreate,
    requester_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await comment_service.add_comment(db, post_id, requester_id, data))
