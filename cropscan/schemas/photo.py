from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime
import json

from cropscan.schemas.analysis import CropAnalysis


class PhotoStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class BlobCategory(str, Enum):
    PHOTOS = "photos"
    DRONE_DATA = "drone-data"


class CaptureLocation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    altitude: Optional[float] = None


class ImageMetadata(BaseModel):
    width: int
    height: int
    format: str
    gps: Optional[CaptureLocation] = None


class PhotoCreate(BaseModel):
    owner_id: int
    blob_handle: str
    blob_durable: bool = True
    category: BlobCategory = BlobCategory.PHOTOS
    original_name: str
    mime_type: str
    size_bytes: int = Field(..., ge=0)
    width: Optional[int] = None
    height: Optional[int] = None
    image_format: Optional[str] = None
    capture_location: Optional[CaptureLocation] = None


class Photo(PhotoCreate):
    id: int
    status: PhotoStatus = PhotoStatus.PENDING
    analysis: Optional[CropAnalysis] = None
    is_fallback: bool = False
    error_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator('analysis', mode='before')
    @classmethod
    def parse_analysis(cls, v):
        if isinstance(v, str):
            return json.loads(v)
        return v


class RecentPhotosResponse(BaseModel):
    photos: List[Photo]
    source: str = "store"  # "demo" when the record store was unreachable


class OwnerPhotosResponse(BaseModel):
    photos: List[Photo]
    total: int
    limit: int
    offset: int
    has_more: bool


class BatchOperation(str, Enum):
    ANALYZE = "analyze"
    DELETE = "delete"


class BatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    photo_ids: List[int] = Field(..., alias="photoIds", min_length=1, max_length=100)
    operation: BatchOperation


class BatchItemResult(BaseModel):
    photo_id: int
    success: bool
    status: Optional[PhotoStatus] = None
    is_fallback: Optional[bool] = None
    error: Optional[str] = None


class BatchResponse(BaseModel):
    operation: BatchOperation
    results: List[BatchItemResult]
    succeeded: int
    failed: int
