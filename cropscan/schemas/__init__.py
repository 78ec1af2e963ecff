from cropscan.schemas.analysis import (
    Severity,
    Urgency,
    CostEstimate,
    CropAnalysis,
    UpstreamDiagnosis,
    SynthesizedAnalysis,
    SCHEMA_VERSION,
    HEALTHY
)
from cropscan.schemas.photo import (
    PhotoStatus,
    BlobCategory,
    CaptureLocation,
    ImageMetadata,
    PhotoCreate,
    Photo,
    RecentPhotosResponse,
    OwnerPhotosResponse,
    BatchOperation,
    BatchRequest,
    BatchItemResult,
    BatchResponse
)

__all__ = [
    "Severity",
    "Urgency",
    "CostEstimate",
    "CropAnalysis",
    "UpstreamDiagnosis",
    "SynthesizedAnalysis",
    "SCHEMA_VERSION",
    "HEALTHY",
    "PhotoStatus",
    "BlobCategory",
    "CaptureLocation",
    "ImageMetadata",
    "PhotoCreate",
    "Photo",
    "RecentPhotosResponse",
    "OwnerPhotosResponse",
    "BatchOperation",
    "BatchRequest",
    "BatchItemResult",
    "BatchResponse"
]
