import pytest

from cropscan.errors import EmptyFile, FileTooLarge, UnsupportedType, ValidationError
from cropscan.schemas import BlobCategory
from cropscan.services.validation import allowed_mime_types, validate_upload


def test_accepts_supported_photo(jpeg_bytes):
    validate_upload(jpeg_bytes, "image/jpeg")
    validate_upload(jpeg_bytes, "IMAGE/PNG")


def test_empty_file_rejected():
    with pytest.raises(EmptyFile) as exc:
        validate_upload(b"", "image/jpeg")
    assert exc.value.status_code == 400


def test_oversize_rejected():
    with pytest.raises(FileTooLarge) as exc:
        validate_upload(b"x" * 2048, "image/jpeg", max_size=1024)
    assert exc.value.status_code == 413


def test_unsupported_type_message_lists_allowed():
    with pytest.raises(UnsupportedType) as exc:
        validate_upload(b"%PDF-1.4", "application/pdf")
    assert exc.value.status_code == 415
    assert "not supported" in exc.value.message
    assert "JPG" in exc.value.message


def test_empty_wins_over_type():
    # Fixed rule order: empty, size, type
    with pytest.raises(EmptyFile):
        validate_upload(b"", "application/pdf")


def test_size_wins_over_type():
    with pytest.raises(FileTooLarge):
        validate_upload(b"x" * 10, "application/pdf", max_size=5)


def test_tiff_only_allowed_for_survey_data(jpeg_bytes):
    with pytest.raises(UnsupportedType):
        validate_upload(jpeg_bytes, "image/tiff", BlobCategory.PHOTOS)
    validate_upload(jpeg_bytes, "image/tiff", BlobCategory.DRONE_DATA)
    assert "image/tiff" in allowed_mime_types(BlobCategory.DRONE_DATA)


def test_all_validation_errors_share_base():
    for error in (EmptyFile, FileTooLarge, UnsupportedType):
        assert issubclass(error, ValidationError)


def test_text_file_rejected_as_unsupported():
    with pytest.raises(UnsupportedType) as exc:
        validate_upload(b"field notes", "text/plain")
    assert exc.value.status_code == 415
