from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Range of the integer id columns (signed 32-bit).
ID_MIN = -(2**31)
ID_MAX = 2**31 - 1


class FieldPatch(BaseModel):
    """
    Base for partial-update payloads.

    A field is *supplied* when the client sent it with a non-null value;
    every other field is left untouched by the update.
    """

    def supplied(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }


# --- Summaries embedded in other records ---

class AuthorSummary(BaseModel):
    id: int
    name: str | None = None
    model_config = ConfigDict(from_attributes=True)


class CategorySummary(BaseModel):
    id: int
    name: str
    model_config = ConfigDict(from_attributes=True)


# --- User / auth ---

class UserCreate(BaseModel):
    email: str | None = Field(None, max_length=255)
    name: str | None = Field(None, max_length=150)
    password: str | None = None


class LoginRequest(BaseModel):
    email: str | None = None
    password: str | None = None


class PasswordChange(BaseModel):
    old_password: str | None = None
    new_password: str | None = None


class ProfileUpdate(BaseModel):
    """
    Profile patch.  Unlike posts, an explicit ``null`` avatar or phone
    number is meaningful (it clears the value), so presence is decided by
    ``model_fields_set`` alone.
    """

    name: str | None = Field(None, max_length=150)
    avatar: str | None = Field(None, max_length=500)
    phone_number: str | None = Field(None, max_length=32)

    def supplied(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None
    avatar: str | None = None
    phone_number: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserResponse


class AvatarResponse(BaseModel):
    url: str
    message: str


# --- Comment ---

class CommentCreate(BaseModel):
    content: str | None = None


class CommentResponse(BaseModel):
    id: int
    content: str
    post_id: int
    author_id: int
    author: AuthorSummary | None = None
    created_at: datetime | None
    updated_at: datetime | None


# --- Post ---

class PostCreate(BaseModel):
    title: str | None = Field(None, max_length=300)
    content: str | None = None
    published: bool | None = None  # null is a draft
    categories: list[str] = []  # category names


class PostUpdate(FieldPatch):
    title: str | None = Field(None, max_length=300)
    content: str | None = None
    published: bool | None = None
    preview_text: str | None = Field(None, max_length=100)
    categories: list[str] | None = None


class PostListQuery(BaseModel):
    """Raw list filters as they arrive on the query string."""

    is_favorited: str | None = None
    author_id: str | None = None
    published: str | None = None
    last_edited_after: str | None = None


class PostSummary(BaseModel):
    id: int
    title: str
    published: bool
    preview_text: str
    created_at: datetime | None
    updated_at: datetime | None
    last_edited_at: datetime | None
    author_id: int
    author: AuthorSummary | None = None
    categories: list[CategorySummary] = []
    is_user_owner: bool
    is_favorited_by_current_user: bool


class PostDetail(PostSummary):
    content: str
    comments: list[CommentResponse] = []


class PostMutationResponse(BaseModel):
    message: str
    data: PostDetail


# --- Favorites / plain messages ---

class FavoriteResponse(BaseModel):
    message: str
    already_favorited: bool = False


class MessageResponse(BaseModel):
    message: str
