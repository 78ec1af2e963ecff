import pytest

from cropscan.errors import BlobNotFound, MetadataError
from cropscan.services.metadata_service import parse_gps, read_image_metadata


def test_reads_dimensions_and_format(jpeg_bytes, png_bytes):
    meta = read_image_metadata(jpeg_bytes)
    assert (meta.width, meta.height, meta.format) == (64, 48, "JPEG")
    assert meta.gps is None

    meta = read_image_metadata(png_bytes)
    assert (meta.width, meta.height, meta.format) == (32, 32, "PNG")


def test_garbage_raises_metadata_error():
    with pytest.raises(MetadataError):
        read_image_metadata(b"definitely not an image")


def test_parse_gps_north_east():
    location = parse_gps({
        1: "N", 2: (52.0, 30.0, 0.0),
        3: "E", 4: (13.0, 24.0, 36.0),
        5: 0, 6: 34.5,
    })
    assert location.latitude == pytest.approx(52.5)
    assert location.longitude == pytest.approx(13.41)
    assert location.altitude == pytest.approx(34.5)


def test_parse_gps_south_west_below_sea_level():
    location = parse_gps({
        1: "S", 2: (33.0, 52.0, 4.8),
        3: "W", 4: (70.0, 0.0, 0.0),
        5: b"\x01", 6: 12.0,
    })
    assert location.latitude == pytest.approx(-(33 + 52 / 60 + 4.8 / 3600), abs=1e-6)
    assert location.longitude == pytest.approx(-70.0)
    assert location.altitude == pytest.approx(-12.0)


def test_parse_gps_incomplete_or_invalid():
    assert parse_gps({}) is None
    assert parse_gps({1: "N", 2: (10.0, 0.0, 0.0)}) is None
    # Latitude out of range
    assert parse_gps({2: (120.0, 0.0, 0.0), 4: (10.0, 0.0, 0.0)}) is None


async def test_extract_from_blob_store(blob_store, metadata_extractor, jpeg_bytes):
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    meta = await metadata_extractor.extract(handle)

    assert (meta.width, meta.height) == (64, 48)
    # Read-only: the blob is unchanged
    assert await blob_store.read(handle) == jpeg_bytes


async def test_extract_missing_blob(metadata_extractor):
    with pytest.raises(BlobNotFound):
        await metadata_extractor.extract("photos/missing.jpg")
