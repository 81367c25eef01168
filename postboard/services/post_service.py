"""
Post service — visibility, ownership and derived fields for the Post aggregate.

Design notes
------------
- Visibility is a SQL predicate, never a Python-side filter: a requester
  sees every published post plus their own drafts.  It is ANDed with
  every optional list filter, so no filter combination can surface
  another user's draft.  Detail reads and all relationship writes
  (comments, favorites) apply the same predicate and report an invisible
  post as not found.
- ``is_user_owner`` and ``is_favorited_by_current_user`` are computed per
  request relative to the requester and are never stored.  The favorite
  flag is fetched in the same statement as the posts via a correlated
  EXISTS column.
- ``preview_text`` is derived from ``content`` by stripping markup and
  truncating; whenever ``content`` changes it is recomputed and a
  client-supplied preview in the same patch is ignored.
- Service functions flush but do not commit; the transaction boundary
  is owned by the ``get_db`` dependency in the router layer.
"""
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import and_, delete, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload, selectinload

from postboard.cache import cache
from postboard.config import settings
from postboard.errors import ServiceError
from postboard.models import Category, Comment, Favorite, Post, post_categories, utcnow
from postboard.schemas import ID_MAX, ID_MIN, PostCreate, PostListQuery, PostUpdate

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_MARKUP_RE = re.compile(r"<[^>]*>")
_INTEGER_RE = re.compile(r"-?[0-9]+")
PREVIEW_ELLIPSIS = "..."

# Fields a non-owner may never touch.
OWNER_ONLY_FIELDS: frozenset[str] = frozenset(
    {"title", "content", "published", "preview_text", "categories"}
)

# Changing any of these counts as an edit for ``last_edited_at``.
_EDIT_FIELDS: frozenset[str] = frozenset({"title", "content", "preview_text"})


def strip_markup(text: str) -> str:
    """Remove every ``<...>`` tag from *text*."""
    return _MARKUP_RE.sub("", text)


def make_preview_text(content: str, length: int | None = None) -> str:
    """
    Return the preview of *content*: markup stripped, cut to *length*
    characters with ``...`` appended when something was cut.

    Content that is blank once stripped yields an empty preview.
    """
    if length is None:
        length = settings.PREVIEW_TEXT_LENGTH
    plain = strip_markup(content)
    if not plain.strip():
        return ""
    if len(plain) > length:
        return plain[:length] + PREVIEW_ELLIPSIS
    return plain


def visible_to(requester_id: int | None):
    """
    SQL predicate for the posts *requester_id* may see.

    Anonymous requesters (``None``) only see published posts.
    """
    if requester_id is None:
        return Post.published.is_(True)
    return or_(
        Post.published.is_(True),
        and_(Post.published.is_(False), Post.author_id == requester_id),
    )


def favorited_by(user_id: int | None):
    """Correlated EXISTS: *user_id* has a favorite link to the outer post."""
    return exists().where(Favorite.user_id == user_id, Favorite.post_id == Post.id)


def parse_epoch_millis(raw: str) -> datetime | None:
    """Parse an epoch-milliseconds string, or return None if it is not a usable instant."""
    try:
        millis = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(millis):
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


@dataclass(frozen=True)
class PostFilters:
    """Typed list filters; ``None`` means the filter was not requested."""

    favorited: bool | None = None
    author_id: int | None = None
    published: bool | None = None
    edited_after: datetime | None = None


def parse_filters(query: PostListQuery) -> PostFilters | ServiceError:
    """
    Turn raw query-string values into ``PostFilters``.

    - ``is_favorited``: only ``"true"`` / ``"false"`` are meaningful; any
      other value is ignored.
    - ``author_id``: must be an integer.
    - ``published``: ``"true"`` matches published posts, anything else
      matches drafts.
    - ``last_edited_after``: finite epoch milliseconds.
    """
    favorited = None
    if query.is_favorited == "true":
        favorited = True
    elif query.is_favorited == "false":
        favorited = False

    author_id = None
    if query.author_id is not None:
        if not _INTEGER_RE.fullmatch(query.author_id):
            return ServiceError.validation(
                "Invalid author_id filter: expected an integer", author_id=query.author_id
            )
        author_id = int(query.author_id)
        if not ID_MIN <= author_id <= ID_MAX:
            return ServiceError.validation(
                "Invalid author_id filter: out of range", author_id=query.author_id
            )

    published = None
    if query.published is not None:
        published = query.published == "true"

    edited_after = None
    if query.last_edited_after is not None:
        edited_after = parse_epoch_millis(query.last_edited_after)
        if edited_after is None:
            return ServiceError.validation(
                "Invalid last_edited_after filter: expected epoch milliseconds",
                last_edited_after=query.last_edited_after,
            )

    return PostFilters(
        favorited=favorited,
        author_id=author_id,
        published=published,
        edited_after=edited_after,
    )


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def author_to_dict(author) -> dict | None:
    if author is None:
        return None
    return {"id": author.id, "name": author.name}


def comment_to_dict(comment: Comment) -> dict:
    return {
        "id": comment.id,
        "content": comment.content,
        "post_id": comment.post_id,
        "author_id": comment.author_id,
        "author": author_to_dict(comment.author),
        "created_at": _isoformat(comment.created_at),
        "updated_at": _isoformat(comment.updated_at),
    }


def _post_to_dict(post: Post, requester_id: int | None, is_favorited: bool) -> dict:
    """Serialise a Post for list views: metadata and preview, no content body."""
    return {
        "id": post.id,
        "title": post.title,
        "published": post.published,
        "preview_text": post.preview_text,
        "created_at": _isoformat(post.created_at),
        "updated_at": _isoformat(post.updated_at),
        "last_edited_at": _isoformat(post.last_edited_at),
        "author_id": post.author_id,
        "author": author_to_dict(post.author),
        "categories": [{"id": c.id, "name": c.name} for c in post.categories],
        "is_user_owner": requester_id is not None and post.author_id == requester_id,
        "is_favorited_by_current_user": bool(is_favorited),
    }


def _post_detail_to_dict(post: Post, requester_id: int | None, is_favorited: bool) -> dict:
    """Serialise a Post for the detail view, with content and comments."""
    data = _post_to_dict(post, requester_id, is_favorited)
    data["content"] = post.content
    comments = sorted(post.comments, key=lambda c: (c.created_at, c.id))
    data["comments"] = [comment_to_dict(c) for c in comments]
    return data


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------

def _detail_query(requester_id: int | None):
    return select(
        Post, favorited_by(requester_id).label("is_favorited")
    ).options(
        joinedload(Post.author),
        selectinload(Post.categories),
        selectinload(Post.comments).joinedload(Comment.author),
    )


async def _load_detail(db: AsyncSession, post_id: int, requester_id: int) -> dict:
    """Re-read a post written in this session and serialise its detail view."""
    q = (
        _detail_query(requester_id)
        .where(Post.id == post_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(q)
    post, is_favorited = result.unique().one()
    return _post_detail_to_dict(post, requester_id, is_favorited)


async def _resolve_categories(db: AsyncSession, names: list[str]) -> list[Category]:
    """
    Return Category instances for *names*, creating missing ones within
    the caller's transaction.  Blank and repeated names are skipped.
    """
    categories: list[Category] = []
    seen: set[str] = set()
    for raw in names:
        name = raw.strip()
        if not name or name in seen:
            continue
        seen.add(name)
        result = await db.execute(select(Category).where(Category.name == name))
        category = result.scalar_one_or_none()
        if category is None:
            category = Category(name=name)
            db.add(category)
            await db.flush()
        categories.append(category)
    return categories


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def list_posts(
    db: AsyncSession,
    requester_id: int,
    query: PostListQuery | None = None,
) -> list[dict] | ServiceError:
    """
    Return the posts visible to *requester_id*, newest first, narrowed by
    the optional filters in *query*.
    """
    filters = parse_filters(query or PostListQuery())
    if isinstance(filters, ServiceError):
        return filters

    q = select(Post, favorited_by(requester_id).label("is_favorited")).where(
        visible_to(requester_id)
    )
    if filters.favorited is True:
        q = q.where(favorited_by(requester_id))
    elif filters.favorited is False:
        q = q.where(~favorited_by(requester_id))
    if filters.author_id is not None:
        q = q.where(Post.author_id == filters.author_id)
    if filters.published is not None:
        q = q.where(Post.published.is_(filters.published))
    if filters.edited_after is not None:
        q = q.where(Post.last_edited_at > filters.edited_after)

    q = q.options(joinedload(Post.author), selectinload(Post.categories)).order_by(
        Post.created_at.desc(), Post.id.desc()
    )
    result = await db.execute(q)
    return [
        _post_to_dict(post, requester_id, is_favorited)
        for post, is_favorited in result.unique().all()
    ]


async def get_post(db: AsyncSession, post_id: int, requester_id: int | None) -> dict | ServiceError:
    """
    Return the full detail dict for *post_id* (content and comments).

    Another user's draft is reported exactly like a missing post.
    """
    q = _detail_query(requester_id).where(Post.id == post_id, visible_to(requester_id))
    result = await db.execute(q)
    row = result.unique().one_or_none()
    if row is None:
        return ServiceError.not_found("Post", post_id)
    post, is_favorited = row
    return _post_detail_to_dict(post, requester_id, is_favorited)


async def create_post(db: AsyncSession, requester_id: int, data: PostCreate) -> dict | ServiceError:
    """Create a post owned by *requester_id* and return its detail dict."""
    if not data.title or not data.title.strip() or not data.content or not data.content.strip():
        return ServiceError.validation("Title and content must not be empty")

    now = utcnow()
    post = Post(
        title=data.title,
        content=data.content,
        published=bool(data.published),
        preview_text=make_preview_text(data.content),
        author_id=requester_id,
        created_at=now,
        updated_at=now,
        last_edited_at=now,
    )
    if data.categories:
        post.categories.extend(await _resolve_categories(db, data.categories))

    db.add(post)
    await db.flush()
    logger.info(
        "Post %s created by user %s (%s)",
        post.id,
        requester_id,
        "published" if post.published else "draft",
    )
    return await _load_detail(db, post.id, requester_id)


async def update_post(
    db: AsyncSession, post_id: int, requester_id: int, patch: PostUpdate
) -> dict | ServiceError:
    """
    Apply the supplied fields of *patch* to *post_id*.

    Non-owners are rejected as soon as any owner-only field is supplied.
    A patch that supplies nothing is rejected rather than treated as a
    no-op.
    """
    result = await db.execute(
        select(Post).where(Post.id == post_id).options(selectinload(Post.categories))
    )
    post = result.scalar_one_or_none()
    if post is None:
        return ServiceError.not_found("Post", post_id)

    changes = patch.supplied()
    if post.author_id != requester_id and OWNER_ONLY_FIELDS & changes.keys():
        return ServiceError.forbidden(
            "You are not allowed to modify this post", post_id=post_id
        )

    category_names: list[str] | None = changes.pop("categories", None)

    updates: dict = {}
    if "title" in changes:
        updates["title"] = changes["title"]
    if "published" in changes:
        updates["published"] = changes["published"]
    if "content" in changes:
        updates["content"] = changes["content"]
        updates["preview_text"] = make_preview_text(changes["content"])
    elif "preview_text" in changes:
        updates["preview_text"] = changes["preview_text"]

    if not updates and category_names is None:
        return ServiceError.validation("No updatable fields were supplied")

    for field, value in updates.items():
        setattr(post, field, value)
    if _EDIT_FIELDS & updates.keys():
        post.last_edited_at = utcnow()
    if category_names is not None:
        post.categories.clear()
        post.categories.extend(await _resolve_categories(db, category_names))

    await db.flush()
    logger.info("Post %s updated by user %s: %s", post_id, requester_id, sorted(changes))
    return await _load_detail(db, post_id, requester_id)


async def delete_post(db: AsyncSession, post_id: int, requester_id: int) -> dict | ServiceError:
    """
    Delete *post_id* together with its comments, favorite links and
    category links.

    A post that disappears between the ownership check and the delete
    (concurrent delete) is reported as not found.
    """
    result = await db.execute(select(Post.author_id).where(Post.id == post_id))
    author_id = result.scalar_one_or_none()
    if author_id is None:
        return ServiceError.not_found("Post", post_id)
    if author_id != requester_id:
        return ServiceError.forbidden("You are not allowed to delete this post", post_id=post_id)

    await db.execute(delete(Comment).where(Comment.post_id == post_id))
    await db.execute(delete(Favorite).where(Favorite.post_id == post_id))
    await db.execute(delete(post_categories).where(post_categories.c.post_id == post_id))
    deleted = await db.execute(delete(Post).where(Post.id == post_id))
    if deleted.rowcount == 0:
        return ServiceError.not_found("Post", post_id)

    await db.flush()
    await cache.invalidate_comments(post_id, session=db)
    logger.info("Post %s deleted by user %s", post_id, requester_id)
    return {"id": post_id, "deleted": True}
