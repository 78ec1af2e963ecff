import io

import httpx
import pytest
from PIL import Image

from cropscan.config import Settings
from cropscan.services import BlobStore, InMemoryPhotoRepository, MetadataExtractor, PlantIdClient

VISION_URL = "https://vision.test/api/v3"

# Healthy tomato in our own field names, confidence as a fraction
FLAT_RESPONSE = {"cropName": "Tomato", "diseaseName": "healthy", "confidence": 0.92}

PLANT_ID_RESPONSE = {
    "result": {
        "is_healthy": {"binary": False, "probability": 0.12},
        "classification": {
            "suggestions": [
                {"name": "Solanum lycopersicum", "details": {"common_names": ["Tomato"]}}
            ]
        },
        "disease": {
            "suggestions": [
                {
                    "name": "Early blight",
                    "probability": 0.87,
                    "details": {
                        "description": "Concentric brown rings on older leaves.",
                        "cause": "Alternaria solani",
                        "treatment": {
                            "chemical": ["Copper-based fungicide"],
                            "biological": ["Bacillus subtilis spray"],
                            "prevention": ["Rotate crops", "Remove infected debris"],
                        },
                    },
                }
            ]
        },
    }
}


def make_image(fmt: str = "JPEG", size=(64, 48), color=(34, 139, 34)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, fmt)
    return buffer.getvalue()


def vision_client(blob_store: BlobStore, handler, api_key: str = "test-key") -> PlantIdClient:
    """PlantIdClient whose HTTP traffic goes to `handler` instead of the network."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PlantIdClient(blob_store, api_key=api_key, base_url=VISION_URL, http_client=http_client)


def respond_with(payload, status_code: int = 200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, json=payload)

    handler.calls = calls
    return handler


def respond_in_sequence(*responses):
    """Each call gets the next response; exceptions in the list are raised."""
    calls = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    handler.calls = calls
    return handler


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG")


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG", size=(32, 32), color=(200, 180, 40))


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def blob_store(upload_dir) -> BlobStore:
    store = BlobStore(upload_dir=str(upload_dir), ephemeral=False, inline_fallback=True)
    store.initialize()
    return store


@pytest.fixture
def metadata_extractor(blob_store):
    extractor = MetadataExtractor(blob_store, max_workers=2)
    yield extractor
    extractor.shutdown()


@pytest.fixture
def repository() -> InMemoryPhotoRepository:
    return InMemoryPhotoRepository()


@pytest.fixture
def test_settings(upload_dir) -> Settings:
    return Settings(
        record_store="memory",
        upload_dir=str(upload_dir),
        plant_id_api_key="test-key",
        plant_id_api_url=VISION_URL,
        analysis_retries=1,
        max_upload_size=1024 * 1024,
    )
