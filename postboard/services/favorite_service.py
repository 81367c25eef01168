"""
Favorite service — the per-(user, post) favorite toggle.

States per pair are *not favorited* and *favorited*:

- ``favorite_post`` is idempotent.  A second call reports
  ``already_favorited`` instead of failing, and a concurrent insert that
  loses the race on the (user_id, post_id) primary key is absorbed the
  same way.  Only when the key conflict cannot be confirmed by a re-read
  is a CONFLICT returned.
- ``unfavorite_post`` is deliberately not idempotent: removing a link
  that does not exist is NOT_FOUND.  It checks only the link, not the
  post.
"""
import logging

from sqlalchemy import delete, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postboard.errors import ServiceError
from postboard.models import Favorite, Post
from postboard.services.post_service import visible_to

logger = logging.getLogger(__name__)


async def _favorite_exists(db: AsyncSession, user_id: int, post_id: int) -> bool:
    q = select(exists().where(Favorite.user_id == user_id, Favorite.post_id == post_id))
    return bool((await db.execute(q)).scalar())


async def favorite_post(db: AsyncSession, post_id: int, user_id: int) -> dict | ServiceError:
    """Record that *user_id* favorited *post_id*."""
    post_q = select(Post.id).where(Post.id == post_id, visible_to(user_id))
    if (await db.execute(post_q)).scalar_one_or_none() is None:
        return ServiceError.not_found("Post", post_id)

    if await _favorite_exists(db, user_id, post_id):
        return {"post_id": post_id, "already_favorited": True}

    db.add(Favorite(user_id=user_id, post_id=post_id))
    try:
        await db.flush()
    except IntegrityError:
        # Nothing else was written in this unit of work.
        await db.rollback()
        if await _favorite_exists(db, user_id, post_id):
            logger.warning(
                "Concurrent favorite of post %s by user %s absorbed", post_id, user_id
            )
            return {"post_id": post_id, "already_favorited": True}
        logger.warning("Unconfirmed favorite conflict for post %s, user %s", post_id, user_id)
        return ServiceError.conflict(
            "Favorite conflict, the post may already be favorited", post_id=post_id
        )

    logger.info("User %s favorited post %s", user_id, post_id)
    return {"post_id": post_id, "already_favorited": False}


async def unfavorite_post(db: AsyncSession, post_id: int, user_id: int) -> dict | ServiceError:
    """Remove the favorite link between *user_id* and *post_id*."""
    result = await db.execute(
        delete(Favorite).where(Favorite.user_id == user_id, Favorite.post_id == post_id)
    )
    if result.rowcount == 0:
        return ServiceError.not_found("Favorite")
    logger.info("User %s unfavorited post %s", user_id, post_id)
    return {"post_id": post_id, "already_favorited": False}
