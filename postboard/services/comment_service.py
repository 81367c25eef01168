"""
Comment service — comments as a dependent collection of a Post.

Comments follow the visibility of their post: listing or commenting on
another user's draft is NOT_FOUND, and anonymous readers only reach the
comments of published posts.  Lists are served cache-aside (Redis, then
database) because they are identical for every requester who can see
the post; any write to a post's comments drops its cache entry.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from postboard.cache import cache
from postboard.errors import ServiceError
from postboard.models import Comment, Post
from postboard.schemas import CommentCreate
from postboard.services.post_service import comment_to_dict, visible_to


async def _post_is_visible(db: AsyncSession, post_id: int, requester_id: int | None) -> bool:
    q = select(Post.id).where(Post.id == post_id, visible_to(requester_id))
    return (await db.execute(q)).scalar_one_or_none() is not None


async def list_comments(
    db: AsyncSession, post_id: int, requester_id: int | None = None
) -> list[dict] | ServiceError:
    """Return the comments of *post_id*, oldest first, each with its author."""
    if not await _post_is_visible(db, post_id, requester_id):
        return ServiceError.not_found("Post", post_id)

    cached = await cache.get_comments(post_id)
    if cached is not None:
        return cached

    q = (
        select(Comment)
        .where(Comment.post_id == post_id)
        .options(joinedload(Comment.author))
        .order_by(Comment.created_at.asc(), Comment.id.asc())
    )
    result = await db.execute(q)
    comments = [comment_to_dict(c) for c in result.scalars().all()]

    await cache.set_comments(post_id, comments)
    return comments


async def add_comment(
    db: AsyncSession,
    post_id: int,
    requester_id: int,
    data: CommentCreate,
) -> dict | ServiceError:
    """
    Append a comment by *requester_id* to *post_id*.

    Any authenticated user may comment on any post they can see.
    """
    if not data.content or not data.content.strip():
        return ServiceError.validation("Comment content must not be empty")

    if not await _post_is_visible(db, post_id, requester_id):
        return ServiceError.not_found("Post", post_id)

    comment = Comment(content=data.content, post_id=post_id, author_id=requester_id)
    db.add(comment)
    await db.flush()

    result = await db.execute(
        select(Comment)
        .where(Comment.id == comment.id)
        .options(joinedload(Comment.author))
        .execution_options(populate_existing=True)
    )
    comment = result.scalar_one()

    await cache.invalidate_comments(post_id, session=db)
    return comment_to_dict(comment)
