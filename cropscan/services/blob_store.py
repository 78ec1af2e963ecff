"""
Blob Store

Persists raw image bytes under <upload_dir>/<category>/ and hands back opaque
handles. When the disk is unavailable the bytes are base64-encoded and held
in process memory instead; such handles are flagged non-durable.
"""
import base64
import io
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from fastapi.concurrency import run_in_threadpool
from PIL import Image

from cropscan.config import settings
from cropscan.errors import BlobNotFound, StorageError
from cropscan.schemas.photo import BlobCategory
from cropscan.services.validation import EXTENSIONS, validate_upload

logger = logging.getLogger(__name__)

INLINE_PREFIX = "inline:"
THUMBNAIL_DIR = "thumbnails"


@dataclass(frozen=True)
class BlobHandle:
    key: str
    durable: bool = True

    def __str__(self) -> str:
        return self.key

    @classmethod
    def from_key(cls, key: str) -> "BlobHandle":
        return cls(key=key, durable=not key.startswith(INLINE_PREFIX))


HandleLike = Union[BlobHandle, str]


def _as_handle(handle: HandleLike) -> BlobHandle:
    if isinstance(handle, BlobHandle):
        return handle
    return BlobHandle.from_key(handle)


def generate_filename(original_name: Optional[str], mime_type: str, owner_id: int) -> str:
    ext = os.path.splitext(original_name or "")[1].lower()
    if ext not in EXTENSIONS.values() and ext != ".jpeg":
        ext = EXTENSIONS.get(mime_type, "")
    return f"{owner_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex}{ext}"


class BlobStore:

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        ephemeral: Optional[bool] = None,
        inline_fallback: Optional[bool] = None,
        max_upload_size: Optional[int] = None,
        thumbnail_size: Optional[int] = None
    ):
        self.upload_dir = Path(upload_dir or settings.upload_dir)
        self.ephemeral = settings.ephemeral_storage if ephemeral is None else ephemeral
        self.inline_fallback = settings.inline_fallback if inline_fallback is None else inline_fallback
        self.max_upload_size = max_upload_size or settings.max_upload_size
        self.thumbnail_size = thumbnail_size or settings.thumbnail_size
        # key -> base64 payload, lives as long as the process
        self._inline: Dict[str, str] = {}

    def initialize(self) -> bool:
        """Create storage directories. Returns False if the disk is unusable."""
        if self.ephemeral:
            logger.info("Ephemeral storage configured, blobs will be kept inline")
            return False

        directories = [self.upload_dir / c.value for c in BlobCategory] + [self.upload_dir / THUMBNAIL_DIR]
        for directory in directories:
            try:
                directory.mkdir(parents=True, exist_ok=True)
                marker = directory / ".write-test"
                marker.write_bytes(b"ok")
                marker.unlink()
            except OSError as e:
                logger.warning(f"Storage directory not writable: {directory} ({e})")
                return False
        logger.info(f"Blob storage ready at {self.upload_dir}")
        return True

    async def save(
        self,
        data: bytes,
        owner_id: int,
        category: BlobCategory = BlobCategory.PHOTOS,
        *,
        mime_type: str,
        filename: Optional[str] = None
    ) -> BlobHandle:
        """
        Validate and persist image bytes.

        Args:
            data: Raw file content
            owner_id: Opaque owner reference, used in the stored file name
            category: Storage category (decides which mime types are allowed)
            mime_type: Declared content type
            filename: Original file name, only its extension is kept

        Returns:
            BlobHandle; durable=False when the bytes were kept inline

        Raises:
            ValidationError subclasses before any write, StorageError if nothing could be stored
        """
        category = BlobCategory(category)
        validate_upload(data, mime_type, category, self.max_upload_size)
        name = generate_filename(filename, mime_type, owner_id)

        if not self.ephemeral:
            try:
                return await run_in_threadpool(self._write_file, data, category, name)
            except OSError as e:
                if not self.inline_fallback:
                    raise StorageError(f"Failed to save file: {e}") from e
                logger.warning(f"Disk write failed for {name}, falling back to inline storage: {e}")
        elif not self.inline_fallback:
            raise StorageError("Persistent storage is not available in this environment")

        return self._save_inline(data)

    def _write_file(self, data: bytes, category: BlobCategory, name: str) -> BlobHandle:
        directory = self.upload_dir / category.value
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(data)
        self._write_thumbnail(data, name)
        key = f"{category.value}/{name}"
        logger.info(f"Saved blob {key} ({len(data)} bytes)")
        return BlobHandle(key=key, durable=True)

    def _write_thumbnail(self, data: bytes, name: str) -> Optional[Path]:
        # Thumbnails are a nicety; a failure here never fails the save
        try:
            thumb_dir = self.upload_dir / THUMBNAIL_DIR
            thumb_dir.mkdir(parents=True, exist_ok=True)
            thumb_path = thumb_dir / f"thumb_{Path(name).stem}.jpg"
            with Image.open(io.BytesIO(data)) as image:
                image.thumbnail((self.thumbnail_size, self.thumbnail_size))
                if image.mode != "RGB":
                    image = image.convert("RGB")
                image.save(thumb_path, "JPEG", quality=80)
            return thumb_path
        except Exception as e:
            logger.info(f"Thumbnail generation skipped for {name}: {e}")
            return None

    def _save_inline(self, data: bytes) -> BlobHandle:
        key = f"{INLINE_PREFIX}{uuid.uuid4().hex}"
        self._inline[key] = base64.b64encode(data).decode("ascii")
        logger.info(f"Saved blob {key} inline ({len(data)} bytes, non-durable)")
        return BlobHandle(key=key, durable=False)

    def _resolve(self, key: str) -> Path:
        root = self.upload_dir.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise BlobNotFound(f"Blob {key} is outside the store")
        return path

    def thumbnail_path(self, handle: HandleLike) -> Optional[Path]:
        handle = _as_handle(handle)
        if not handle.durable:
            return None
        path = self.upload_dir / THUMBNAIL_DIR / f"thumb_{Path(handle.key).stem}.jpg"
        return path if path.exists() else None

    async def read(self, handle: HandleLike) -> bytes:
        handle = _as_handle(handle)
        if not handle.durable:
            payload = self._inline.get(handle.key)
            if payload is None:
                raise BlobNotFound(f"Inline blob {handle.key} is no longer available")
            return base64.b64decode(payload)

        path = self._resolve(handle.key)
        try:
            return await run_in_threadpool(path.read_bytes)
        except FileNotFoundError as e:
            raise BlobNotFound(f"Blob {handle.key} not found") from e
        except OSError as e:
            raise StorageError(f"Failed to read blob {handle.key}: {e}") from e

    async def delete(self, handle: HandleLike) -> bool:
        """Delete a blob and its thumbnail. Unknown or already deleted handles return False."""
        handle = _as_handle(handle)
        if not handle.durable:
            return self._inline.pop(handle.key, None) is not None

        try:
            path = self._resolve(handle.key)
            await run_in_threadpool(path.unlink)
        except (OSError, BlobNotFound) as e:
            logger.debug(f"Blob {handle.key} not deleted: {e}")
            return False

        thumb = self.thumbnail_path(handle)
        if thumb is not None:
            try:
                thumb.unlink()
            except OSError:
                pass  # Thumbnail may already be gone

        logger.info(f"Deleted blob {handle.key}")
        return True

    async def stats(self) -> dict:
        return await run_in_threadpool(self._collect_stats)

    def _collect_stats(self) -> dict:
        stats = {"total_files": 0, "total_size": 0, "categories": {}, "inline_blobs": len(self._inline)}
        for category in [c.value for c in BlobCategory] + [THUMBNAIL_DIR]:
            files = [p for p in (self.upload_dir / category).glob("*") if p.is_file()]
            size = sum(p.stat().st_size for p in files)
            stats["categories"][category] = {"files": len(files), "size": size}
            stats["total_files"] += len(files)
            stats["total_size"] += size
        return stats

    async def purge_orphans(self, known_keys: Iterable[str], older_than: timedelta = timedelta(hours=24)) -> int:
        """
        Delete durable blobs no photo record references.

        Blobs saved right before a failed record insert are left behind by
        ingestion; this sweeps them once they are older than `older_than`.
        """
        known = set(known_keys)
        cutoff = time.time() - older_than.total_seconds()
        deleted = 0
        for category in BlobCategory:
            directory = self.upload_dir / category.value
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                key = f"{category.value}/{path.name}"
                if not path.is_file() or key in known:
                    continue
                if path.stat().st_mtime >= cutoff:
                    continue
                if await self.delete(BlobHandle(key=key)):
                    deleted += 1
        logger.info(f"Purged {deleted} orphaned blobs")
        return deleted
