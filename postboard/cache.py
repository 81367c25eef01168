import json
import logging

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from postboard.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "postboard"

# Session.info entry: post ids whose comment lists changed in the open transaction.
STALE_COMMENTS_KEY = "stale_comment_lists"


class CacheManager:
    """
    Read-through cache for per-post comment lists, backed by Redis.

    Only requester-independent data is stored here.  Post rows carry
    ``is_user_owner`` and the favorite flag, which differ per reader, so
    they are always read from the database.

    Redis being down is not an error: lookups count as misses and writes
    and invalidations are skipped.
    """

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits: int = 0
        self._misses: int = 0

    async def connect(self) -> None:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await client.ping()
        except Exception as exc:  # pragma: no cover
            logger.warning("Redis ping failed, comment cache disabled: %s", exc)
            await client.aclose()
            return
        self._redis = client
        logger.info("Redis connected: %s", settings.REDIS_URL)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def comments_key(post_id: int) -> str:
        return f"{KEY_PREFIX}:posts:{post_id}:comments"

    # ------------------------------------------------------------------
    # Comment lists
    # ------------------------------------------------------------------

    async def get_comments(self, post_id: int) -> list[dict] | None:
        """Cached comment list of *post_id*, or None when it has to be read from the database."""
        if not self._redis:
            self._misses += 1
            return None
        key = self.comments_key(post_id)
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.debug("Cache GET failed for %s: %s", key, exc)
            raw = None
        if raw is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(raw)

    async def set_comments(self, post_id: int, comments: list[dict]) -> None:
        if not self._redis:
            return
        key = self.comments_key(post_id)
        try:
            await self._redis.set(
                key, json.dumps(comments, default=str), ex=settings.CACHE_TTL_COMMENTS
            )
        except Exception as exc:
            logger.debug("Cache SET failed for %s: %s", key, exc)

    async def invalidate_comments(self, post_id: int, session: AsyncSession | None = None) -> None:
        """
        Drop the cached comment list of *post_id* after any write to it.

        With *session* the entry is dropped again by ``after_commit``: a
        reader that misses between this call and the commit still sees the
        old rows and may cache them.
        """
        if session is not None:
            session.info.setdefault(STALE_COMMENTS_KEY, set()).add(post_id)
        if not self._redis:
            return
        key = self.comments_key(post_id)
        try:
            await self._redis.delete(key)
        except Exception as exc:
            logger.debug("Cache DELETE failed for %s: %s", key, exc)

    async def after_commit(self, session: AsyncSession) -> None:
        """Re-drop every comment list invalidated in *session*'s committed transaction."""
        for post_id in sorted(session.info.pop(STALE_COMMENTS_KEY, ())):
            await self.invalidate_comments(post_id)

    @staticmethod
    def after_rollback(session: AsyncSession) -> None:
        session.info.pop(STALE_COMMENTS_KEY, None)

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "connected": self._redis is not None,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


# Shared by all request handlers.
cache = CacheManager()
