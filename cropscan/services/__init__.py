from cropscan.services.blob_store import BlobStore, BlobHandle
from cropscan.services.metadata_service import MetadataExtractor
from cropscan.services.vision_client import PlantIdClient
from cropscan.services.report_service import ReportSynthesizer
from cropscan.services.photo_repository import PhotoRepository, InMemoryPhotoRepository, SqlPhotoRepository
from cropscan.services.ingestion_service import IngestionService

__all__ = [
    "BlobStore", "BlobHandle",
    "MetadataExtractor",
    "PlantIdClient",
    "ReportSynthesizer",
    "PhotoRepository", "InMemoryPhotoRepository", "SqlPhotoRepository",
    "IngestionService"
]
