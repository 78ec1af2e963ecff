from typing import Optional

from cropscan.config import settings
from cropscan.errors import EmptyFile, FileTooLarge, UnsupportedType
from cropscan.schemas.photo import BlobCategory

PHOTO_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
# TIFF comes from survey cameras, never from handheld uploads
SURVEY_MIME_TYPES = PHOTO_MIME_TYPES | {"image/tiff"}

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/tiff": ".tiff",
}


def allowed_mime_types(category: BlobCategory) -> set:
    if category == BlobCategory.DRONE_DATA:
        return SURVEY_MIME_TYPES
    return PHOTO_MIME_TYPES


def validate_upload(
    data: bytes,
    mime_type: Optional[str],
    category: BlobCategory = BlobCategory.PHOTOS,
    max_size: Optional[int] = None
) -> None:
    """
    Validate an upload before anything touches storage.

    Rules run in a fixed order and the first failure wins:
    empty, then size, then type.

    Raises:
        EmptyFile, FileTooLarge, UnsupportedType
    """
    max_size = max_size or settings.max_upload_size

    if not data:
        raise EmptyFile("File is empty")

    if len(data) > max_size:
        # Callers may pass only the first max_size + 1 bytes, so the real size is unknown
        raise FileTooLarge(f"File exceeds the {max_size // (1024 * 1024)}MB limit")

    allowed = allowed_mime_types(BlobCategory(category))
    if (mime_type or "").lower() not in allowed:
        readable = ", ".join(sorted(ext.lstrip(".").upper() for ext in {EXTENSIONS[m] for m in allowed}))
        raise UnsupportedType(f"File type '{mime_type}' not supported. Allowed types: {readable}")
