from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Text, Index
from sqlalchemy.sql import func
from cropscan.database import Base


class PhotoRecord(Base):
    __tablename__ = "photos"
    __table_args__ = (
        Index("ix_photos_owner_recent", "owner_id", "created_at", "id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)

    # Blob handle is exclusively owned by this record
    blob_handle = Column(String(512), nullable=False)
    blob_durable = Column(Boolean, nullable=False, default=True)
    category = Column(String(32), nullable=False, default="photos")

    original_name = Column(String(255), nullable=False)
    mime_type = Column(String(64), nullable=False)
    size_bytes = Column(Integer, nullable=False)

    # Image metadata (optional enrichment)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    image_format = Column(String(16), nullable=True)

    # Capture location from EXIF GPS
    gps_latitude = Column(Float, nullable=True)
    gps_longitude = Column(Float, nullable=True)
    gps_altitude = Column(Float, nullable=True)

    status = Column(String(16), nullable=False, default="pending", index=True)
    analysis = Column(Text, nullable=True)  # JSON string
    is_fallback = Column(Boolean, nullable=False, default=False)
    error_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())
