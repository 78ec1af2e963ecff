import json

import httpx
import pytest

from cropscan.errors import (
    MalformedUpstreamResponse,
    NotConfigured,
    UpstreamRejected,
    UpstreamUnreachable,
)
from cropscan.schemas import HEALTHY, Severity, Urgency
from cropscan.services.vision_client import normalize_confidence, normalize_percent, parse_response

from tests.conftest import FLAT_RESPONSE, PLANT_ID_RESPONSE, VISION_URL, respond_with, vision_client


@pytest.mark.parametrize("raw, expected", [
    (0.92, 92),
    (0.0, 0),
    (1, 100),
    (1.0, 100),
    (0.005, 0),
    (0.555, 56),
    (87, 87),
    (87.6, 88),
    (150, 100),
    (-3, 0),
    ("0.5", 50),
    (None, None),
    ("high", None),
    (float("nan"), None),
    (float("inf"), None),
    ("-inf", None),
    (1e999, None),
])
def test_normalize_confidence(raw, expected):
    assert normalize_confidence(raw) == expected


def test_parse_flat_camel_case():
    diagnosis = parse_response(FLAT_RESPONSE)

    assert diagnosis.source == "flat"
    assert diagnosis.crop_name == "Tomato"
    assert diagnosis.disease_name == HEALTHY
    assert diagnosis.confidence == 92


def test_parse_flat_full_snake_case():
    diagnosis = parse_response({
        "analysis": {
            "crop_name": "Maize",
            "disease_name": "Northern leaf blight",
            "confidence": 73,
            "severity": "High",
            "urgency": "within week",
            "estimated_yield_loss_pct": 22.4,
            "symptoms": ["Cigar-shaped lesions"],
            "treatments": "Foliar fungicide",
            "cost_of_treatment": {"low": 40, "high": 90, "currency": "usd"},
        }
    })

    assert diagnosis.severity == Severity.HIGH
    assert diagnosis.urgency == Urgency.WITHIN_WEEK
    assert diagnosis.estimated_yield_loss_pct == 22
    assert diagnosis.treatments == ["Foliar fungicide"]
    assert (diagnosis.cost_low, diagnosis.cost_high) == (40.0, 90.0)


def test_parse_plant_id_disease():
    diagnosis = parse_response(PLANT_ID_RESPONSE)

    assert diagnosis.source == "plant_id_v3"
    assert diagnosis.crop_name == "Tomato"
    assert diagnosis.disease_name == "Early blight"
    assert diagnosis.confidence == 87
    assert diagnosis.causes == ["Alternaria solani"]
    assert diagnosis.treatments == ["Copper-based fungicide", "Bacillus subtilis spray"]
    assert diagnosis.prevention == ["Rotate crops", "Remove infected debris"]


def test_parse_plant_id_healthy():
    diagnosis = parse_response({"result": {"is_healthy": {"binary": True, "probability": 0.97}}})

    assert diagnosis.disease_name == HEALTHY
    assert diagnosis.confidence == 97


def test_parse_chat_completion_with_fences():
    content = "```json\n" + json.dumps({"cropName": "Rice", "diseaseName": "Blast", "confidence": 0.6}) + "\n```"
    diagnosis = parse_response({"choices": [{"message": {"content": content}}]})

    assert diagnosis.source == "chat_completion"
    assert diagnosis.crop_name == "Rice"
    assert diagnosis.disease_name == "Blast"
    assert diagnosis.confidence == 60


@pytest.mark.parametrize("payload", [
    {},
    {"status": "ok"},
    {"choices": [{"message": {"content": "I cannot help with that."}}]},
    ["not", "an", "object"],
])
def test_unrecognised_payload_is_malformed(payload):
    with pytest.raises(MalformedUpstreamResponse):
        parse_response(payload)


async def test_analyze_posts_image(blob_store, jpeg_bytes):
    handler = respond_with(FLAT_RESPONSE)
    client = vision_client(blob_store, handler)
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    diagnosis = await client.analyze(handle)

    assert diagnosis.confidence == 92
    request = handler.calls[0]
    assert str(request.url) == f"{VISION_URL}/identification"
    assert request.headers["Api-Key"] == "test-key"
    body = json.loads(request.content)
    assert len(body["images"]) == 1
    assert body["health"] == "all"


async def test_analyze_not_configured(blob_store, jpeg_bytes):
    handler = respond_with(FLAT_RESPONSE)
    client = vision_client(blob_store, handler, api_key="")
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    with pytest.raises(NotConfigured):
        await client.analyze(handle)
    assert handler.calls == []


@pytest.mark.parametrize("status, retryable", [(400, False), (401, False), (500, True), (503, True)])
async def test_analyze_rejected(blob_store, jpeg_bytes, status, retryable):
    client = vision_client(blob_store, respond_with({"error": "nope"}, status_code=status))
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    with pytest.raises(UpstreamRejected) as exc:
        await client.analyze(handle)
    assert exc.value.upstream_status == status
    assert exc.value.retryable is retryable


async def test_analyze_unreachable(blob_store, jpeg_bytes):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = vision_client(blob_store, handler)
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    with pytest.raises(UpstreamUnreachable) as exc:
        await client.analyze(handle)
    assert exc.value.retryable


async def test_analyze_timeout(blob_store, jpeg_bytes):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = vision_client(blob_store, handler)
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    with pytest.raises(UpstreamUnreachable):
        await client.analyze(handle)


async def test_analyze_non_json_body(blob_store, jpeg_bytes):
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    client = vision_client(blob_store, handler)
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    with pytest.raises(MalformedUpstreamResponse):
        await client.analyze(handle)


@pytest.mark.parametrize("raw, expected", [
    (12.4, 12),
    ("12.6", 13),
    (250, 100),
    ("inf", None),
    (float("-inf"), None),
    ("nan", None),
    (True, None),
])
def test_normalize_percent(raw, expected):
    assert normalize_percent(raw) == expected


def test_non_finite_numbers_count_as_missing():
    diagnosis = parse_response({
        "cropName": "Corn",
        "diseaseName": "Common rust",
        "confidence": "nan",
        "estimatedYieldLoss": "inf",
        "costOfTreatment": {"low": "nan", "high": "Infinity", "currency": "usd"},
    })

    assert diagnosis.disease_name == "Common rust"
    assert diagnosis.confidence is None
    assert diagnosis.estimated_yield_loss_pct is None
    assert (diagnosis.cost_low, diagnosis.cost_high) == (None, None)


async def test_analyze_body_with_json_infinity(blob_store, jpeg_bytes):
    # Python's json accepts the non-standard Infinity/NaN literals
    body = b'{"cropName": "Corn", "diseaseName": "rust", "confidence": NaN, "estimatedYieldLoss": Infinity}'

    def handler(request):
        return httpx.Response(200, content=body, headers={"content-type": "application/json"})

    client = vision_client(blob_store, handler)
    handle = await blob_store.save(jpeg_bytes, 1, mime_type="image/jpeg")

    diagnosis = await client.analyze(handle)

    assert diagnosis.crop_name == "Corn"
    assert diagnosis.confidence is None
    assert diagnosis.estimated_yield_loss_pct is None
