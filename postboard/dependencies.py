from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from postboard.schemas import PostListQuery
from postboard.security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _subject_from(credentials: HTTPAuthorizationCredentials) -> int:
    claims = decode_access_token(credentials.credentials)
    if claims is None:
        raise _credentials_exception()
    return int(claims["sub"])


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> int:
    """
    Resolve the authenticated requester id from the ``Authorization:
    Bearer`` header.  The id is passed explicitly into every service call.
    """
    if credentials is None:
        raise _credentials_exception()
    return _subject_from(credentials)


async def get_optional_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> int | None:
    """Like ``get_current_user_id`` but anonymous requests resolve to None."""
    if credentials is None:
        return None
    return _subject_from(credentials)


class PostFilterParams:
    """
    Reusable FastAPI dependency collecting the optional post-list filters.

    Values are kept as raw strings; ``post_service.parse_filters`` owns
    their interpretation so malformed input becomes a 400, not a 422.

    Attributes
    ----------
    is_favorited:
        ``"true"`` restricts to posts the requester favorited, ``"false"``
        to posts they did not.
    author_id:
        Integer id of the author.
    published:
        ``"true"`` for published posts, anything else for drafts.
    last_edited_after:
        Epoch milliseconds; only posts edited strictly later are returned.
    """

    def __init__(
        self,
        is_favorited: str | None = Query(None, description="'true' or 'false'."),
        author_id: str | None = Query(None, description="Exact author id."),
        published: str | None = Query(None, description="'true' or 'false'."),
        last_edited_after: str | None = Query(
            None, description="Epoch milliseconds (exclusive lower bound)."
        ),
    ) -> None:
        self.is_favorited = is_favorited
        self.author_id = author_id
        self.published = published
        self.last_edited_after = last_edited_after

    def to_query(self) -> PostListQuery:
        return PostListQuery(
            is_favorited=self.is_favorited,
            author_id=self.author_id,
            published=self.published,
            last_edited_after=self.last_edited_after,
        )
