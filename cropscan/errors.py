"""
Error taxonomy for the ingestion pipeline.

Every error carries the HTTP status it maps to; the API layer renders
any CropScanError as {"error": message}.
"""
from typing import Optional


class CropScanError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# Client-fixable upload problems

class ValidationError(CropScanError):
    status_code = 400


class EmptyFile(ValidationError):
    status_code = 400


class FileTooLarge(ValidationError):
    status_code = 413


class UnsupportedType(ValidationError):
    status_code = 415


# Local infrastructure

class StorageError(CropScanError):
    status_code = 503


class BlobNotFound(StorageError):
    status_code = 404


class MetadataError(CropScanError):
    status_code = 422


# Upstream vision API

class AnalysisError(CropScanError):
    status_code = 502
    kind = "analysis_error"
    retryable = False


class NotConfigured(AnalysisError):
    kind = "not_configured"


class UpstreamRejected(AnalysisError):
    kind = "upstream_rejected"

    def __init__(self, message: str, upstream_status: int, body: Optional[str] = None):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body

    @property
    def retryable(self) -> bool:
        # 5xx is the upstream's problem and may clear up; 4xx never will
        return self.upstream_status >= 500


class UpstreamUnreachable(AnalysisError):
    kind = "upstream_unreachable"
    retryable = True


class MalformedUpstreamResponse(AnalysisError):
    kind = "malformed_upstream_response"


# Record store

class InvalidTransition(CropScanError):
    status_code = 409

    def __init__(self, photo_id: int, current: str, target: str):
        super().__init__(f"Photo {photo_id} cannot move from '{current}' to '{target}'")
        self.photo_id = photo_id
        self.current = current
        self.target = target


class PhotoNotFound(CropScanError):
    status_code = 404

    def __init__(self, photo_id: int):
        super().__init__(f"Photo {photo_id} not found")
        self.photo_id = photo_id


class AnalysisNotReady(CropScanError):
    status_code = 400

    def __init__(self, photo_id: int, status: str):
        super().__init__(f"Photo {photo_id} has no analysis yet (status '{status}')")
        self.photo_id = photo_id
        self.status = status
