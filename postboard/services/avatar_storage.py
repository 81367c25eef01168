"""
Avatar storage — validates an uploaded image and writes it below
``settings.UPLOAD_DIR/avatars`` under a generated name.

The stored file name never contains client input, and the returned URL
is what gets saved on the user record.
"""
import logging
import uuid
from pathlib import Path

import aiofiles
from fastapi import UploadFile

from postboard.config import settings
from postboard.errors import ServiceError

logger = logging.getLogger(__name__)

AVATAR_SUBDIR = "avatars"

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
}


def avatar_dir() -> Path:
    return Path(settings.UPLOAD_DIR) / AVATAR_SUBDIR


def avatar_url(filename: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/uploads/{AVATAR_SUBDIR}/{filename}"


async def save_avatar(user_id: int, upload: UploadFile) -> str | ServiceError:
    """Store *upload* as the avatar image of *user_id* and return its public URL."""
    extension = ALLOWED_CONTENT_TYPES.get(upload.content_type or "")
    if extension is None:
        return ServiceError.validation(
            "Only JPG, PNG and GIF images are supported",
            content_type=upload.content_type,
        )

    # Read one byte past the limit so oversized files are detected without
    # buffering all of them.
    content = await upload.read(settings.AVATAR_MAX_BYTES + 1)
    if not content:
        return ServiceError.validation("The uploaded file is empty")
    if len(content) > settings.AVATAR_MAX_BYTES:
        max_mb = settings.AVATAR_MAX_BYTES / (1024 * 1024)
        return ServiceError.validation(f"File is too large, the maximum is {max_mb:.0f}MB")

    directory = avatar_dir()
    directory.mkdir(parents=True, exist_ok=True)
    filename = f"avatar-{user_id}-{uuid.uuid4().hex}{extension}"
    async with aiofiles.open(directory / filename, "wb") as fh:
        await fh.write(content)

    logger.info("Stored avatar for user %s as %s (%d bytes)", user_id, filename, len(content))
    return avatar_url(filename)
