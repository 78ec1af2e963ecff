"""
Photo Record Store

PhotoRepository owns the photo lifecycle state machine. Two backends:
an in-memory map (optionally snapshotted to JSON) and SQLAlchemy.
"""
import asyncio
import json
import logging
import os
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from cropscan import database
from cropscan.errors import InvalidTransition, PhotoNotFound, StorageError
from cropscan.models.photo import PhotoRecord
from cropscan.schemas.analysis import CropAnalysis
from cropscan.schemas.photo import BlobCategory, CaptureLocation, Photo, PhotoCreate, PhotoStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PhotoStatus.PENDING: {PhotoStatus.ANALYZING},
    PhotoStatus.ANALYZING: {PhotoStatus.COMPLETED, PhotoStatus.FAILED},
    PhotoStatus.COMPLETED: {PhotoStatus.PENDING},
    PhotoStatus.FAILED: {PhotoStatus.PENDING},
}


def check_transition(photo_id: int, current: PhotoStatus, target: PhotoStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(photo_id, current.value, target.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PhotoRepository(ABC):

    def __init__(self):
        # One lock per photo id; entries vanish once nobody holds them
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, photo_id: int) -> asyncio.Lock:
        lock = self._locks.get(photo_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[photo_id] = lock
        return lock

    @abstractmethod
    async def create(self, meta: PhotoCreate) -> Photo:
        """Insert a new photo in status pending."""

    @abstractmethod
    async def get(self, photo_id: int) -> Optional[Photo]:
        ...

    @abstractmethod
    async def list_recent(self, owner_id: int, limit: int = 10) -> List[Photo]:
        """Newest first; ties on created_at broken by id descending."""

    @abstractmethod
    async def list_for_owner(
        self,
        owner_id: int,
        limit: int = 50,
        offset: int = 0,
        category: Optional[BlobCategory] = None
    ) -> List[Photo]:
        """One page of an owner's photos, same order as list_recent."""

    @abstractmethod
    async def count_for_owner(self, owner_id: int, category: Optional[BlobCategory] = None) -> int:
        ...

    @abstractmethod
    async def list_by_status(self, statuses: List[PhotoStatus]) -> List[Photo]:
        ...

    @abstractmethod
    async def delete(self, photo_id: int) -> Optional[Photo]:
        ...

    @abstractmethod
    async def all_blob_keys(self) -> List[str]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def _write_status(
        self,
        current: Photo,
        status: PhotoStatus,
        analysis: Optional[CropAnalysis],
        is_fallback: bool,
        error_reason: Optional[str]
    ) -> Photo:
        ...

    async def update_status(
        self,
        photo_id: int,
        status: PhotoStatus,
        analysis: Optional[CropAnalysis] = None,
        error_reason: Optional[str] = None,
        is_fallback: bool = False
    ) -> Photo:
        """
        Move a photo through its lifecycle.

        Analysis is written together with the completed status, and
        error_reason together with failed; every other status clears both.

        Raises:
            PhotoNotFound: unknown id
            InvalidTransition: transition not allowed from the current status
        """
        status = PhotoStatus(status)
        if status == PhotoStatus.COMPLETED and analysis is None:
            raise ValueError("completed status requires an analysis")
        if status == PhotoStatus.FAILED and not error_reason:
            raise ValueError("failed status requires an error_reason")
        if status != PhotoStatus.COMPLETED:
            analysis, is_fallback = None, False
        if status != PhotoStatus.FAILED:
            error_reason = None

        async with self._lock_for(photo_id):
            current = await self.get(photo_id)
            if current is None:
                raise PhotoNotFound(photo_id)
            check_transition(photo_id, current.status, status)
            updated = await self._write_status(current, status, analysis, is_fallback, error_reason)

        logger.info(f"Photo {photo_id}: {current.status.value} -> {status.value}")
        return updated


class InMemoryPhotoRepository(PhotoRepository):
    """Dict-backed store. With snapshot_path set, state survives restarts."""

    def __init__(self, snapshot_path: Optional[str] = None):
        super().__init__()
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._photos: Dict[int, Photo] = {}
        self._next_id = 1
        # Serializes snapshot writes; each one holds the whole map
        self._write_lock = asyncio.Lock()
        self._load_snapshot()

    def _load_snapshot(self):
        if not self.snapshot_path or not self.snapshot_path.exists():
            return
        try:
            data = json.loads(self.snapshot_path.read_text())
            self._photos = {p["id"]: Photo.model_validate(p) for p in data.get("photos", [])}
            self._next_id = data.get("next_id", max(self._photos, default=0) + 1)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageError(f"Cannot load photo snapshot {self.snapshot_path}: {e}") from e
        logger.info(f"Loaded {len(self._photos)} photos from {self.snapshot_path}")

    def _persist(self, photos: Dict[int, Photo], next_id: int):
        if not self.snapshot_path:
            return
        payload = {
            "next_id": next_id,
            "photos": [p.model_dump(mode="json") for p in photos.values()],
        }
        tmp_path = self.snapshot_path.with_suffix(".tmp")
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload))
            os.replace(tmp_path, self.snapshot_path)
        except OSError as e:
            raise StorageError(f"Cannot write photo snapshot: {e}") from e

    async def _commit(self, photos: Dict[int, Photo], next_id: int):
        """Write the snapshot, then swap state in. Callers hold _write_lock."""
        if self.snapshot_path:
            await run_in_threadpool(self._persist, photos, next_id)
        self._photos, self._next_id = photos, next_id

    async def create(self, meta: PhotoCreate) -> Photo:
        async with self._write_lock:
            photo = Photo(
                **meta.model_dump(),
                id=self._next_id,
                status=PhotoStatus.PENDING,
                created_at=_now(),
            )
            photos = dict(self._photos)
            photos[photo.id] = photo
            await self._commit(photos, self._next_id + 1)
        return photo.model_copy(deep=True)

    async def get(self, photo_id: int) -> Optional[Photo]:
        photo = self._photos.get(photo_id)
        return photo.model_copy(deep=True) if photo else None

    def _owned(self, owner_id: int, category: Optional[BlobCategory] = None) -> List[Photo]:
        owned = [
            p for p in self._photos.values()
            if p.owner_id == owner_id and (category is None or p.category == category)
        ]
        owned.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return owned

    async def list_recent(self, owner_id: int, limit: int = 10) -> List[Photo]:
        return [p.model_copy(deep=True) for p in self._owned(owner_id)[:limit]]

    async def list_for_owner(self, owner_id, limit=50, offset=0, category=None) -> List[Photo]:
        page = self._owned(owner_id, category)[offset:offset + limit]
        return [p.model_copy(deep=True) for p in page]

    async def count_for_owner(self, owner_id: int, category: Optional[BlobCategory] = None) -> int:
        return len(self._owned(owner_id, category))

    async def list_by_status(self, statuses: List[PhotoStatus]) -> List[Photo]:
        return [p.model_copy(deep=True) for p in self._photos.values() if p.status in statuses]

    async def delete(self, photo_id: int) -> Optional[Photo]:
        async with self._lock_for(photo_id), self._write_lock:
            if photo_id not in self._photos:
                return None
            photos = dict(self._photos)
            removed = photos.pop(photo_id)
            await self._commit(photos, self._next_id)
        return removed

    async def all_blob_keys(self) -> List[str]:
        return [p.blob_handle for p in self._photos.values()]

    async def ping(self) -> bool:
        return True

    async def _write_status(self, current, status, analysis, is_fallback, error_reason) -> Photo:
        updated = current.model_copy(update={
            "status": status,
            "analysis": analysis.model_copy(deep=True) if analysis else None,
            "is_fallback": is_fallback,
            "error_reason": error_reason,
            "updated_at": _now(),
        })
        async with self._write_lock:
            photos = dict(self._photos)
            photos[updated.id] = updated
            await self._commit(photos, self._next_id)
        return updated.model_copy(deep=True)


def record_to_photo(record: PhotoRecord) -> Photo:
    location = None
    if record.gps_latitude is not None and record.gps_longitude is not None:
        location = CaptureLocation(
            latitude=record.gps_latitude,
            longitude=record.gps_longitude,
            altitude=record.gps_altitude
        )
    return Photo(
        id=record.id,
        owner_id=record.owner_id,
        blob_handle=record.blob_handle,
        blob_durable=record.blob_durable,
        category=record.category,
        original_name=record.original_name,
        mime_type=record.mime_type,
        size_bytes=record.size_bytes,
        width=record.width,
        height=record.height,
        image_format=record.image_format,
        capture_location=location,
        status=record.status,
        analysis=record.analysis,
        is_fallback=record.is_fallback,
        error_reason=record.error_reason,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class SqlPhotoRepository(PhotoRepository):
    """
    SQLAlchemy-backed store.

    Transitions are compare-and-set on the expected current status, so two
    processes sharing a database still cannot both win the same transition.
    """

    def __init__(self, engine: AsyncEngine, session_factory: Optional[async_sessionmaker] = None):
        super().__init__()
        self.engine = engine
        self.session_factory = session_factory or database.create_session_factory(engine)

    async def create(self, meta: PhotoCreate) -> Photo:
        location = meta.capture_location
        record = PhotoRecord(
            owner_id=meta.owner_id,
            blob_handle=meta.blob_handle,
            blob_durable=meta.blob_durable,
            category=meta.category.value,
            original_name=meta.original_name,
            mime_type=meta.mime_type,
            size_bytes=meta.size_bytes,
            width=meta.width,
            height=meta.height,
            image_format=meta.image_format,
            gps_latitude=location.latitude if location else None,
            gps_longitude=location.longitude if location else None,
            gps_altitude=location.altitude if location else None,
            status=PhotoStatus.PENDING.value,
            is_fallback=False,
            created_at=_now(),
        )
        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return record_to_photo(record)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create photo record: {e}") from e

    async def get(self, photo_id: int) -> Optional[Photo]:
        try:
            async with self.session_factory() as session:
                record = await session.get(PhotoRecord, photo_id)
                return record_to_photo(record) if record else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load photo {photo_id}: {e}") from e

    async def list_recent(self, owner_id: int, limit: int = 10) -> List[Photo]:
        query = (
            select(PhotoRecord)
            .where(PhotoRecord.owner_id == owner_id)
            .order_by(PhotoRecord.created_at.desc(), PhotoRecord.id.desc())
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return [record_to_photo(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list photos: {e}") from e

    def _owner_filter(self, query, owner_id: int, category: Optional[BlobCategory]):
        query = query.where(PhotoRecord.owner_id == owner_id)
        if category is not None:
            query = query.where(PhotoRecord.category == BlobCategory(category).value)
        return query

    async def list_for_owner(self, owner_id, limit=50, offset=0, category=None) -> List[Photo]:
        query = (
            self._owner_filter(select(PhotoRecord), owner_id, category)
            .order_by(PhotoRecord.created_at.desc(), PhotoRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return [record_to_photo(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list photos for owner {owner_id}: {e}") from e

    async def count_for_owner(self, owner_id: int, category: Optional[BlobCategory] = None) -> int:
        query = self._owner_filter(select(func.count(PhotoRecord.id)), owner_id, category)
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return result.scalar_one()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count photos for owner {owner_id}: {e}") from e

    async def list_by_status(self, statuses: List[PhotoStatus]) -> List[Photo]:
        query = (
            select(PhotoRecord)
            .where(PhotoRecord.status.in_([PhotoStatus(s).value for s in statuses]))
            .order_by(PhotoRecord.id)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return [record_to_photo(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list photos by status: {e}") from e

    async def delete(self, photo_id: int) -> Optional[Photo]:
        async with self._lock_for(photo_id):
            photo = await self.get(photo_id)
            if photo is None:
                return None
            try:
                async with self.session_factory() as session:
                    await session.execute(delete(PhotoRecord).where(PhotoRecord.id == photo_id))
                    await session.commit()
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to delete photo {photo_id}: {e}") from e
        return photo

    async def all_blob_keys(self) -> List[str]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(PhotoRecord.blob_handle))
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list blob handles: {e}") from e

    async def ping(self) -> bool:
        try:
            return await database.ping(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Database unreachable: {e}") from e

    async def _write_status(self, current, status, analysis, is_fallback, error_reason) -> Photo:
        stmt = (
            update(PhotoRecord)
            .where(PhotoRecord.id == current.id, PhotoRecord.status == current.status.value)
            .values(
                status=status.value,
                analysis=analysis.model_dump_json() if analysis else None,
                is_fallback=is_fallback,
                error_reason=error_reason,
                updated_at=_now(),
            )
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update photo {current.id}: {e}") from e

        if result.rowcount == 0:
            latest = await self.get(current.id)
            if latest is None:
                raise PhotoNotFound(current.id)
            raise InvalidTransition(current.id, latest.status.value, status.value)

        updated = await self.get(current.id)
        if updated is None:
            raise PhotoNotFound(current.id)
        return updated
