"""
User service — registration, credentials, tokens and profile for the
User aggregate.

Email uniqueness is enforced twice: a pre-check gives the common case a
clean CONFLICT, and the unique constraint catches the concurrent-insert
race, which is translated to the same CONFLICT.
"""
import logging
import re

from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postboard.cache import cache
from postboard.config import settings
from postboard.errors import ServiceError
from postboard.models import Comment, User
from postboard.schemas import LoginRequest, PasswordChange, ProfileUpdate, UserCreate
from postboard.security import create_access_token, hash_password, verify_password
from postboard.services import avatar_storage

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[0-9+-]*$")


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _user_to_dict(user: User) -> dict:
    """Serialise a User to its public profile; the password hash never leaves."""
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "avatar": user.avatar,
        "phone_number": user.phone_number,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }


def _token_response(user: User) -> dict:
    return {
        "token": create_access_token(user.id, user.email),
        "token_type": "bearer",
        "user": _user_to_dict(user),
    }


async def _get_user(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def register(db: AsyncSession, data: UserCreate) -> dict | ServiceError:
    """Create a user with a hashed password and return the public profile."""
    if not data.email or not data.password:
        return ServiceError.validation("Email and password are required")
    email = data.email.strip()
    if not _EMAIL_RE.match(email):
        return ServiceError.validation("Invalid email format", field="email")

    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        return ServiceError.conflict("This email is already registered")

    user = User(email=email, name=data.name, password_hash=hash_password(data.password))
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        return ServiceError.conflict("This email is already registered")

    logger.info("Registered user %s", user.id)
    return _user_to_dict(user)


async def login(db: AsyncSession, data: LoginRequest) -> dict | ServiceError:
    """Verify credentials and issue a signed access token."""
    if not data.email or not data.password:
        return ServiceError.validation("Email and password are required")

    result = await db.execute(select(User).where(User.email == data.email.strip()))
    user = result.scalar_one_or_none()
    # Same answer for unknown email and wrong password.
    if user is None or not verify_password(data.password, user.password_hash):
        return ServiceError.authentication("Incorrect email or password")
    return _token_response(user)


async def refresh_token(db: AsyncSession, user_id: int) -> dict | ServiceError:
    """Issue a fresh token for an already authenticated subject."""
    user = await _get_user(db, user_id)
    if user is None:
        return ServiceError.authentication("User no longer exists")
    return _token_response(user)


async def get_profile(db: AsyncSession, user_id: int) -> dict | ServiceError:
    user = await _get_user(db, user_id)
    if user is None:
        return ServiceError.not_found("User", user_id)
    return _user_to_dict(user)


async def change_password(
    db: AsyncSession, user_id: int, data: PasswordChange
) -> dict | ServiceError:
    if not data.old_password or not data.new_password:
        return ServiceError.validation("Old and new password are required")
    if len(data.new_password) < settings.MIN_PASSWORD_LENGTH:
        return ServiceError.validation(
            f"New password must be at least {settings.MIN_PASSWORD_LENGTH} characters"
        )

    user = await _get_user(db, user_id)
    if user is None:
        return ServiceError.not_found("User", user_id)
    if not verify_password(data.old_password, user.password_hash):
        return ServiceError.authentication("Old password is incorrect")

    user.password_hash = hash_password(data.new_password)
    await db.flush()
    logger.info("User %s changed password", user_id)
    return {"id": user_id}


async def update_profile(
    db: AsyncSession, user_id: int, patch: ProfileUpdate
) -> dict | ServiceError:
    """
    Apply the supplied profile fields.

    ``avatar`` may be cleared (empty or null) or set to an ``http...`` URL
    or a ``/``-relative path.  ``phone_number`` may hold digits, ``+`` and
    ``-`` only.
    """
    changes = patch.supplied()

    avatar = changes.get("avatar")
    if avatar and not (avatar.startswith("http") or avatar.startswith("/")):
        return ServiceError.validation(
            "Avatar must be a URL, a relative path, or empty to clear it", field="avatar"
        )
    phone_number = changes.get("phone_number")
    if phone_number is not None and not _PHONE_RE.match(phone_number):
        return ServiceError.validation("Invalid phone number format", field="phone_number")
    if not changes:
        return ServiceError.validation("No profile fields were supplied")
    if "avatar" in changes and not avatar:
        changes["avatar"] = None

    user = await _get_user(db, user_id)
    if user is None:
        return ServiceError.not_found("User", user_id)

    for field, value in changes.items():
        setattr(user, field, value)
    await db.flush()

    # Cached comment lists embed the author's name.
    if "name" in changes:
        result = await db.execute(
            select(Comment.post_id).where(Comment.author_id == user_id).distinct()
        )
        for post_id in result.scalars().all():
            await cache.invalidate_comments(post_id, session=db)
    return _user_to_dict(user)


async def upload_avatar(
    db: AsyncSession, user_id: int, upload: UploadFile
) -> dict | ServiceError:
    """Store an avatar image and point the user's avatar at it."""
    user = await _get_user(db, user_id)
    if user is None:
        return ServiceError.not_found("User", user_id)

    url = await avatar_storage.save_avatar(user_id, upload)
    if isinstance(url, ServiceError):
        return url

    user.avatar = url
    await db.flush()
    return {"url": url}
