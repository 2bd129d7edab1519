"""Local file storage for custom item images.

Files live under ``<media_root>/<bucket>/{user_id}/{item_id}/{timestamp_ms}.{ext}``
and are served from ``<backend_url><media_path>/<bucket>/...``.
"""

import io
import logging
from pathlib import Path
import time

from fastapi import HTTPException, status
from PIL import Image, UnidentifiedImageError

from app.core.config import settings


logger = logging.getLogger("giftify.storage")

_BACKEND_DIR = Path(__file__).resolve().parents[2]

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
_FORMAT_EXTENSIONS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}

INVALID_TYPE_MESSAGE = "Invalid file type. Please use JPG, PNG, or WebP"


def max_upload_bytes() -> int:
    return int(settings.image_upload_max_mb) * 1024 * 1024


def get_media_root() -> Path:
    root = Path(settings.media_root)
    if root.is_absolute():
        return root
    return _BACKEND_DIR / root


def get_bucket_root() -> Path:
    return get_media_root() / settings.item_images_bucket


def _public_prefix() -> str:
    base = settings.backend_url.rstrip("/")
    return f"{base}{settings.media_path.rstrip('/')}/{settings.item_images_bucket}/"


def build_public_url(storage_path: str) -> str:
    return _public_prefix() + storage_path.lstrip("/")


def extract_storage_path(url: str | None) -> str | None:
    """Return the bucket-relative path of a URL we issued, else None."""
    if not url:
        return None
    prefix = _public_prefix()
    if not url.startswith(prefix):
        return None
    path = url[len(prefix):].split("?", 1)[0]
    return path or None


def validate_image(content_type: str | None, data: bytes) -> str:
    """Check type, size and decodability; return the file extension."""
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TYPE_MESSAGE)

    if len(data) > max_upload_bytes():
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size is {settings.image_upload_max_mb}MB",
        )

    try:
        img = Image.open(io.BytesIO(data))
        img.verify()
        fmt = (Image.open(io.BytesIO(data)).format or "").upper()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TYPE_MESSAGE) from None

    ext = _FORMAT_EXTENSIONS.get(fmt)
    if ext is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TYPE_MESSAGE)
    return ext


def item_image_path(user_id: str, item_id: str, ext: str) -> str:
    return f"{user_id}/{item_id}/{int(time.time() * 1000)}.{ext}"


def save_file(storage_path: str, data: bytes) -> Path:
    target = _resolve(storage_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("wb") as fh:
        fh.write(data)
    logger.info("Stored file path=%s bytes=%d", storage_path, len(data))
    return target


def delete_file(storage_path: str) -> bool:
    target = _resolve(storage_path)
    if not target.exists():
        return False
    target.unlink()
    logger.info("Deleted file path=%s", storage_path)
    return True


def _resolve(storage_path: str) -> Path:
    root = get_bucket_root().resolve()
    target = (root / storage_path).resolve()
    if root not in target.parents:
        raise ValueError(f"Storage path escapes bucket: {storage_path}")
    return target
