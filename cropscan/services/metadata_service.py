"""
Image metadata extraction: dimensions, format and EXIF GPS.
Pillow decoding is CPU-bound, so it runs on a small dedicated worker pool.
"""
import asyncio
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError

from cropscan.config import settings
from cropscan.errors import MetadataError
from cropscan.schemas.photo import CaptureLocation, ImageMetadata
from cropscan.services.blob_store import BlobStore, HandleLike

logger = logging.getLogger(__name__)

GPS_IFD = 0x8825

# GPS IFD tag ids
GPS_LATITUDE_REF = 1
GPS_LATITUDE = 2
GPS_LONGITUDE_REF = 3
GPS_LONGITUDE = 4
GPS_ALTITUDE_REF = 5
GPS_ALTITUDE = 6


def _dms_to_degrees(value) -> float:
    degrees, minutes, seconds = (float(part) for part in value)
    return degrees + minutes / 60.0 + seconds / 3600.0


def parse_gps(gps_info: Dict[int, Any]) -> Optional[CaptureLocation]:
    """
    Convert an EXIF GPS IFD into decimal coordinates.

    Returns None when the block is missing, incomplete or nonsensical.
    """
    if not gps_info:
        return None
    try:
        latitude = _dms_to_degrees(gps_info[GPS_LATITUDE])
        longitude = _dms_to_degrees(gps_info[GPS_LONGITUDE])
        if str(gps_info.get(GPS_LATITUDE_REF, "N")).upper().startswith("S"):
            latitude = -latitude
        if str(gps_info.get(GPS_LONGITUDE_REF, "E")).upper().startswith("W"):
            longitude = -longitude

        altitude = None
        if GPS_ALTITUDE in gps_info:
            altitude = float(gps_info[GPS_ALTITUDE])
            # Ref 1 means below sea level
            ref = gps_info.get(GPS_ALTITUDE_REF, 0)
            if isinstance(ref, bytes):
                ref = ref[0] if ref else 0
            if ref == 1:
                altitude = -altitude

        return CaptureLocation(
            latitude=round(latitude, 7),
            longitude=round(longitude, 7),
            altitude=round(altitude, 2) if altitude is not None else None
        )
    except Exception as e:
        logger.debug(f"Ignoring unparseable GPS block: {e}")
        return None


def read_image_metadata(data: bytes) -> ImageMetadata:
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            image_format = (image.format or "unknown").upper()
            try:
                gps = parse_gps(image.getexif().get_ifd(GPS_IFD))
            except Exception as e:
                logger.debug(f"EXIF not readable: {e}")
                gps = None
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise MetadataError(f"Cannot read image headers: {e}") from e

    return ImageMetadata(width=width, height=height, format=image_format, gps=gps)


class MetadataExtractor:

    def __init__(self, blob_store: BlobStore, max_workers: Optional[int] = None):
        self.blob_store = blob_store
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.metadata_workers,
            thread_name_prefix="metadata"
        )

    async def extract(self, handle: HandleLike) -> ImageMetadata:
        """Read-only: the blob is never modified."""
        data = await self.blob_store.read(handle)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, read_image_metadata, data)

    def shutdown(self):
        self._executor.shutdown(wait=False)
