"""
Direct service-layer tests — exercises the visibility, ownership and
favorite logic without HTTP overhead, including paths that cannot be
reached deterministically over the API (the favorite insert race,
concurrent deletes, explicit edit timestamps).
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from postboard.cache import STALE_COMMENTS_KEY, cache
from postboard.database import commit_session, rollback_session
from postboard.errors import ErrorKind, ServiceError
from postboard.models import Favorite, Post, User
from postboard.schemas import CommentCreate, PostCreate, PostListQuery, PostUpdate, ProfileUpdate
from postboard.services import comment_service, favorite_service, post_service, user_service


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _create_user(db: AsyncSession, email: str = "svc@example.com", name: str = "Service User") -> int:
    user = User(email=email, name=name, password_hash="not-a-real-hash")
    db.add(user)
    await db.flush()
    return user.id


async def _create_post(db: AsyncSession, author_id: int, title: str = "Post", published: bool = True) -> int:
    result = await post_service.create_post(
        db, author_id, PostCreate(title=title, content=f"<p>{title} body</p>", published=published)
    )
    assert not isinstance(result, ServiceError)
    return result["id"]


async def _favorite_rows(db: AsyncSession, user_id: int, post_id: int) -> int:
    q = select(func.count()).select_from(Favorite).where(
        Favorite.user_id == user_id, Favorite.post_id == post_id
    )
    return (await db.execute(q)).scalar_one()


# ---------------------------------------------------------------------------
# Preview text
# ---------------------------------------------------------------------------

def test_make_preview_text_truncates_stripped_content():
    content = "<p>hello world this is long enough to truncate</p>"
    assert post_service.make_preview_text(content) == "hello world this is " + "..."


def test_make_preview_text_short_content_is_untouched():
    assert post_service.make_preview_text("<b>hi</b>") == "hi"
    assert post_service.make_preview_text("exactly twenty chars") == "exactly twenty chars"


def test_make_preview_text_blank_markup():
    assert post_service.make_preview_text("<p>   </p>") == ""


# ---------------------------------------------------------------------------
# Filter parsing
# ---------------------------------------------------------------------------

def test_parse_filters_defaults():
    assert post_service.parse_filters(PostListQuery()) == post_service.PostFilters()


def test_parse_filters_values():
    filters = post_service.parse_filters(PostListQuery(
        is_favorited="false", author_id="7", published="true", last_edited_after="1000",
    ))
    assert filters.favorited is False
    assert filters.author_id == 7
    assert filters.published is True
    assert filters.edited_after == datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)


def test_parse_filters_ignores_unknown_favorited_value():
    assert post_service.parse_filters(PostListQuery(is_favorited="maybe")).favorited is None


@pytest.mark.parametrize("query", [
    PostListQuery(author_id="seven"),
    PostListQuery(last_edited_after="soon"),
    PostListQuery(last_edited_after="-inf"),
    PostListQuery(author_id="1_0"),
    PostListQuery(author_id="2147483648"),
    PostListQuery(author_id="-2147483649"),
])
def test_parse_filters_rejects_malformed(query):
    result = post_service.parse_filters(query)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.VALIDATION
    assert result.status_code == 400


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_visibility_rule_for_every_requester(db_session: AsyncSession):
    """A post is listed for R iff it is published or R is its author."""
    users = [await _create_user(db_session, f"u{i}@example.com") for i in range(3)]
    posts = {}
    for author in users:
        for published in (True, False):
            post_id = await _create_post(db_session, author, f"{author}-{published}", published)
            posts[post_id] = (author, published)

    for requester in users:
        listed = {p["id"] for p in await post_service.list_posts(db_session, requester)}
        expected = {
            post_id for post_id, (author, published) in posts.items()
            if published or author == requester
        }
        assert listed == expected


@pytest.mark.asyncio
async def test_edited_after_filter_is_strict(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    old_id = await _create_post(db_session, user_id, "old")
    new_id = await _create_post(db_session, user_id, "new")
    await db_session.execute(
        update(Post).where(Post.id == old_id).values(
            last_edited_at=datetime(2020, 1, 1, tzinfo=timezone.utc)
        )
    )
    await db_session.execute(
        update(Post).where(Post.id == new_id).values(
            last_edited_at=datetime(2024, 1, 1, tzinfo=timezone.utc)
        )
    )
    threshold = datetime(2022, 1, 1, tzinfo=timezone.utc)
    millis = str(int(threshold.timestamp() * 1000))

    rows = await post_service.list_posts(db_session, user_id, PostListQuery(last_edited_after=millis))
    assert [p["id"] for p in rows] == [new_id]

    exact = str(int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp() * 1000))
    rows = await post_service.list_posts(db_session, user_id, PostListQuery(last_edited_after=exact))
    assert rows == []


@pytest.mark.asyncio
async def test_get_post_hides_foreign_drafts(db_session: AsyncSession):
    owner = await _create_user(db_session, "owner@example.com")
    other = await _create_user(db_session, "other@example.com")
    draft_id = await _create_post(db_session, owner, published=False)

    detail = await post_service.get_post(db_session, draft_id, owner)
    assert detail["is_user_owner"] is True
    result = await post_service.get_post(db_session, draft_id, other)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_post_sets_timestamps_and_owner(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    result = await post_service.create_post(
        db_session, user_id, PostCreate(title="T", content="<p>hello world this is long enough to truncate</p>")
    )
    assert result["published"] is False
    assert result["is_user_owner"] is True
    assert result["created_at"] == result["last_edited_at"]
    assert result["preview_text"] == "hello world this is ..."


@pytest.mark.asyncio
async def test_create_post_empty_content(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    result = await post_service.create_post(db_session, user_id, PostCreate(title="T", content=""))
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_update_content_bumps_last_edited_at(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await db_session.execute(
        update(Post).where(Post.id == post_id).values(
            last_edited_at=datetime(2020, 1, 1, tzinfo=timezone.utc)
        )
    )

    published_only = await post_service.update_post(
        db_session, post_id, user_id, PostUpdate(published=False)
    )
    assert published_only["last_edited_at"].startswith("2020-01-01")

    edited = await post_service.update_post(
        db_session, post_id, user_id, PostUpdate(title="Renamed")
    )
    assert not edited["last_edited_at"].startswith("2020-01-01")


@pytest.mark.asyncio
async def test_update_replaces_categories(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    created = await post_service.create_post(
        db_session, user_id, PostCreate(title="C", content="c", categories=["old"])
    )
    updated = await post_service.update_post(
        db_session, created["id"], user_id, PostUpdate(categories=["new-a", "new-b", "new-a"])
    )
    assert {c["name"] for c in updated["categories"]} == {"new-a", "new-b"}


@pytest.mark.asyncio
async def test_non_owner_cannot_touch_categories(db_session: AsyncSession):
    owner = await _create_user(db_session, "owner2@example.com")
    other = await _create_user(db_session, "other2@example.com")
    post_id = await _create_post(db_session, owner)
    result = await post_service.update_post(
        db_session, post_id, other, PostUpdate(categories=["hijack"])
    )
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_null_fields_count_as_absent(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    result = await post_service.update_post(
        db_session, post_id, user_id, PostUpdate(title=None, content=None)
    )
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.VALIDATION


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_twice_is_not_found(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)

    assert await post_service.delete_post(db_session, post_id, user_id) == {"id": post_id, "deleted": True}
    result = await post_service.delete_post(db_session, post_id, user_id)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_post_deleted_after_ownership_check_is_not_found(db_session: AsyncSession, monkeypatch):
    """The row vanishes between the ownership read and the delete itself."""
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)

    real_execute = db_session.execute
    calls = {"n": 0}

    async def competing_delete(statement, *args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            await real_execute(delete(Post).where(Post.id == post_id))
        return await real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "execute", competing_delete)

    result = await post_service.delete_post(db_session, post_id, user_id)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.NOT_FOUND
    assert calls["n"] == 5


@pytest.mark.asyncio
async def test_delete_cascades_to_comments(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await comment_service.add_comment(db_session, post_id, user_id, CommentCreate(content="hi"))

    await post_service.delete_post(db_session, post_id, user_id)
    result = await comment_service.list_comments(db_session, post_id, user_id)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Favorites
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_favorite_race_is_absorbed(db_session: AsyncSession, monkeypatch):
    """
    Simulate a concurrent favorite: the existence check misses a row that a
    competing request already inserted, so the insert hits the primary key.
    """
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await db_session.execute(insert(Favorite).values(user_id=user_id, post_id=post_id))
    await db_session.commit()

    real_exists = favorite_service._favorite_exists
    calls = {"n": 0}

    async def stale_first_check(db, uid, pid):
        calls["n"] += 1
        if calls["n"] == 1:
            return False
        return await real_exists(db, uid, pid)

    monkeypatch.setattr(favorite_service, "_favorite_exists", stale_first_check)

    result = await favorite_service.favorite_post(db_session, post_id, user_id)
    assert result == {"post_id": post_id, "already_favorited": True}
    assert await _favorite_rows(db_session, user_id, post_id) == 1


@pytest.mark.asyncio
async def test_unconfirmed_favorite_conflict(db_session: AsyncSession, monkeypatch):
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await db_session.execute(insert(Favorite).values(user_id=user_id, post_id=post_id))
    await db_session.commit()

    async def never_exists(db, uid, pid):
        return False

    monkeypatch.setattr(favorite_service, "_favorite_exists", never_exists)

    result = await favorite_service.favorite_post(db_session, post_id, user_id)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.CONFLICT
    assert result.status_code == 409


@pytest.mark.asyncio
async def test_unfavorite_does_not_check_post(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    result = await favorite_service.unfavorite_post(db_session, 99999, user_id)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.NOT_FOUND
    assert result.message == "Favorite not found"


@pytest.mark.asyncio
async def test_favorite_then_unfavorite(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)

    first = await favorite_service.favorite_post(db_session, post_id, user_id)
    second = await favorite_service.favorite_post(db_session, post_id, user_id)
    assert first["already_favorited"] is False
    assert second["already_favorited"] is True
    assert await _favorite_rows(db_session, user_id, post_id) == 1

    await favorite_service.unfavorite_post(db_session, post_id, user_id)
    assert await _favorite_rows(db_session, user_id, post_id) == 0


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_comments_anonymous_published_only(db_session: AsyncSession):
    user_id = await _create_user(db_session)
    public_id = await _create_post(db_session, user_id, "public", published=True)
    draft_id = await _create_post(db_session, user_id, "draft", published=False)

    assert await comment_service.list_comments(db_session, public_id) == []
    result = await comment_service.list_comments(db_session, draft_id)
    assert isinstance(result, ServiceError)


# ---------------------------------------------------------------------------
# Comment cache
# ---------------------------------------------------------------------------

class _DictRedis:
    """Minimal in-memory stand-in for the redis.asyncio calls CacheManager makes."""

    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)


@pytest.mark.asyncio
async def test_comment_list_is_cached_and_invalidated(db_session: AsyncSession, monkeypatch):
    fake = _DictRedis()
    monkeypatch.setattr(cache, "_redis", fake)

    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await comment_service.add_comment(db_session, post_id, user_id, CommentCreate(content="first"))

    first = await comment_service.list_comments(db_session, post_id, user_id)
    assert [c["content"] for c in first] == ["first"]
    assert cache.comments_key(post_id) in fake.store

    hits_before = cache.stats["hits"]
    assert await comment_service.list_comments(db_session, post_id, user_id) == first
    assert cache.stats["hits"] == hits_before + 1

    await comment_service.add_comment(db_session, post_id, user_id, CommentCreate(content="second"))
    assert cache.comments_key(post_id) not in fake.store
    listed = await comment_service.list_comments(db_session, post_id, user_id)
    assert [c["content"] for c in listed] == ["first", "second"]


@pytest.mark.asyncio
async def test_cached_comments_still_respect_visibility(db_session: AsyncSession, monkeypatch):
    monkeypatch.setattr(cache, "_redis", _DictRedis())
    owner = await _create_user(db_session, "cowner@example.com")
    other = await _create_user(db_session, "cother@example.com")
    draft_id = await _create_post(db_session, owner, published=False)

    assert await comment_service.list_comments(db_session, draft_id, owner) == []
    result = await comment_service.list_comments(db_session, draft_id, other)
    assert isinstance(result, ServiceError)
    assert result.kind is ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_comment_list_refilled_before_commit_is_dropped_on_commit(db_session: AsyncSession, monkeypatch):
    fake = _DictRedis()
    monkeypatch.setattr(cache, "_redis", fake)
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await commit_session(db_session)

    await comment_service.add_comment(db_session, post_id, user_id, CommentCreate(content="new"))
    # Another request misses the cache before the commit and stores the old list.
    fake.store[cache.comments_key(post_id)] = "[]"

    await commit_session(db_session)
    assert cache.comments_key(post_id) not in fake.store
    listed = await comment_service.list_comments(db_session, post_id, user_id)
    assert [c["content"] for c in listed] == ["new"]


@pytest.mark.asyncio
async def test_deleted_post_comment_list_is_dropped_on_commit(db_session: AsyncSession, monkeypatch):
    fake = _DictRedis()
    monkeypatch.setattr(cache, "_redis", fake)
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await comment_service.add_comment(db_session, post_id, user_id, CommentCreate(content="gone"))
    await commit_session(db_session)

    await post_service.delete_post(db_session, post_id, user_id)
    fake.store[cache.comments_key(post_id)] = '[{"content": "gone"}]'

    await commit_session(db_session)
    assert cache.comments_key(post_id) not in fake.store


@pytest.mark.asyncio
async def test_renaming_user_drops_comment_lists_they_appear_in(db_session: AsyncSession, monkeypatch):
    fake = _DictRedis()
    monkeypatch.setattr(cache, "_redis", fake)
    author = await _create_user(db_session, "poster@example.com", name="Poster")
    commenter = await _create_user(db_session, "talker@example.com", name="Old Name")
    commented_id = await _create_post(db_session, author, "commented")
    quiet_id = await _create_post(db_session, author, "quiet")
    await comment_service.add_comment(db_session, commented_id, commenter, CommentCreate(content="hi"))
    await commit_session(db_session)

    await comment_service.list_comments(db_session, commented_id, author)
    await comment_service.list_comments(db_session, quiet_id, author)
    assert cache.comments_key(commented_id) in fake.store

    await user_service.update_profile(db_session, commenter, ProfileUpdate(name="New Name"))
    await commit_session(db_session)

    assert cache.comments_key(commented_id) not in fake.store
    assert cache.comments_key(quiet_id) in fake.store
    listed = await comment_service.list_comments(db_session, commented_id, author)
    assert listed[0]["author"]["name"] == "New Name"


@pytest.mark.asyncio
async def test_rollback_forgets_pending_comment_invalidations(db_session: AsyncSession, monkeypatch):
    monkeypatch.setattr(cache, "_redis", _DictRedis())
    user_id = await _create_user(db_session)
    post_id = await _create_post(db_session, user_id)
    await comment_service.add_comment(db_session, post_id, user_id, CommentCreate(content="x"))
    assert db_session.info[STALE_COMMENTS_KEY] == {post_id}

    await rollback_session(db_session)
    assert STALE_COMMENTS_KEY not in db_session.info
