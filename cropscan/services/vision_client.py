"""
Plant.id disease identification client.

Sends the stored image to the upstream API and translates whatever comes
back into an UpstreamDiagnosis. The upstream schema drifts, so several
parse strategies are tried before a response is declared malformed.
"""
import base64
import json
import logging
import math
import re
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from cropscan.config import settings
from cropscan.errors import (
    MalformedUpstreamResponse,
    NotConfigured,
    UpstreamRejected,
    UpstreamUnreachable,
)
from cropscan.schemas.analysis import HEALTHY, Severity, UpstreamDiagnosis, Urgency
from cropscan.services.blob_store import BlobStore, HandleLike

logger = logging.getLogger(__name__)

DISEASE_DETAILS = ["common_names", "description", "cause", "treatment", "classification", "url"]

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def normalize_confidence(value: Any) -> Optional[int]:
    """
    Map an upstream confidence onto the 0-100 integer scale.

    Values up to and including 1 are fractions (1 means 100%). Anything
    above 1 is already a percentage and is only rounded. Result is clamped.
    """
    number = _number(value)
    if number is None:
        return None
    if number <= 1:
        number *= 100
    return max(0, min(100, int(round(number))))


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if isinstance(data, dict) and data.get(key) is not None:
            return data[key]
    return None


def _text_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return None


def _choice(enum_cls, value: Any):
    if value is None:
        return None
    try:
        return enum_cls(str(value).strip().lower().replace(" ", "_"))
    except ValueError:
        return None


def _number(value: Any) -> Optional[float]:
    """Finite float or None; NaN and infinities count as absent."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_disease_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    lower = value.lower()
    if "healthy" in lower or "no disease" in lower:
        return HEALTHY
    return value


def parse_plant_id(data: Dict[str, Any]) -> Optional[UpstreamDiagnosis]:
    """Plant.id v3 health assessment shape."""
    result = data.get("result") if isinstance(data.get("result"), dict) else {}
    disease_suggestions = _first(result.get("disease") or {}, "suggestions") or []
    crop_suggestions = _first(result.get("classification") or {}, "suggestions") or []
    if not disease_suggestions and not crop_suggestions:
        disease_suggestions = data.get("suggestions") or []
    is_healthy = result.get("is_healthy") if isinstance(result.get("is_healthy"), dict) else None

    if not isinstance(disease_suggestions, list) or not isinstance(crop_suggestions, list):
        return None
    if not disease_suggestions and not crop_suggestions and is_healthy is None:
        return None

    diagnosis = UpstreamDiagnosis(source="plant_id_v3")

    if crop_suggestions:
        top_crop = crop_suggestions[0]
        common_names = _first(top_crop.get("details") or {}, "common_names") or []
        diagnosis.crop_name = common_names[0] if common_names else _first(top_crop, "plant_name", "name")

    if is_healthy is not None and is_healthy.get("binary"):
        diagnosis.disease_name = HEALTHY
        diagnosis.confidence = normalize_confidence(is_healthy.get("probability"))
        return diagnosis

    if disease_suggestions:
        top = disease_suggestions[0]
        if not isinstance(top, dict):
            return None
        details = top.get("details") or top.get("disease") or {}
        diagnosis.disease_name = normalize_disease_name(
            _first(top.get("disease") or {}, "name") or _first(top, "name")
        )
        if diagnosis.crop_name is None:
            diagnosis.crop_name = _first(top, "plant_name")
        diagnosis.confidence = normalize_confidence(_first(top, "probability", "confidence"))
        diagnosis.symptoms = _text_list(details.get("description"))
        diagnosis.causes = _text_list(details.get("cause"))

        treatment = details.get("treatment")
        if isinstance(treatment, dict):
            diagnosis.treatments = (_text_list(treatment.get("chemical")) or []) + \
                (_text_list(treatment.get("biological")) or [])
            diagnosis.prevention = _text_list(treatment.get("prevention"))
        else:
            diagnosis.treatments = _text_list(treatment)

    return diagnosis


def parse_flat(data: Dict[str, Any]) -> Optional[UpstreamDiagnosis]:
    """A diagnosis object with our own field names, camelCase or snake_case."""
    if isinstance(data.get("analysis"), dict):
        data = data["analysis"]

    crop = _first(data, "cropName", "crop_name", "crop")
    disease = _first(data, "diseaseName", "disease_name", "disease", "diagnosis")
    if not isinstance(crop, str) and not isinstance(disease, str):
        return None

    cost = _first(data, "costOfTreatment", "cost_of_treatment") or {}
    if not isinstance(cost, dict):
        cost = {}

    return UpstreamDiagnosis(
        crop_name=crop if isinstance(crop, str) else None,
        disease_name=normalize_disease_name(disease) if isinstance(disease, str) else None,
        confidence=normalize_confidence(_first(data, "confidence", "probability")),
        severity=_choice(Severity, data.get("severity")),
        urgency=_choice(Urgency, data.get("urgency")),
        estimated_yield_loss_pct=normalize_percent(
            _first(data, "estimatedYieldLoss", "estimatedYieldLossPct", "estimated_yield_loss_pct")
        ),
        symptoms=_text_list(data.get("symptoms")),
        causes=_text_list(data.get("causes")),
        treatments=_text_list(_first(data, "treatments", "treatment")),
        prevention=_text_list(data.get("prevention")),
        recommendations=_text_list(data.get("recommendations")),
        cost_low=_number(cost.get("low")),
        cost_high=_number(cost.get("high")),
        cost_currency=cost.get("currency") if isinstance(cost.get("currency"), str) else None,
        source="flat",
    )


def parse_chat_completion(data: Dict[str, Any]) -> Optional[UpstreamDiagnosis]:
    """OpenAI-style chat completion whose message content is a JSON diagnosis."""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    content = ((choices[0] or {}).get("message") or {}).get("content")
    if not isinstance(content, str):
        return None

    content = _FENCE.sub("", content.strip())
    start, end = content.find("{"), content.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        inner = json.loads(content[start:end + 1])
    except ValueError:
        return None
    if not isinstance(inner, dict):
        return None

    diagnosis = parse_flat(inner)
    if diagnosis is not None:
        diagnosis.source = "chat_completion"
    return diagnosis


def normalize_percent(value: Any) -> Optional[int]:
    number = _number(value)
    if number is None:
        return None
    return max(0, min(100, int(round(number))))


PARSE_STRATEGIES: List[Callable[[Dict[str, Any]], Optional[UpstreamDiagnosis]]] = [
    parse_plant_id,
    parse_flat,
    parse_chat_completion,
]


def parse_response(data: Any) -> UpstreamDiagnosis:
    if not isinstance(data, dict):
        raise MalformedUpstreamResponse(f"Expected a JSON object, got {type(data).__name__}")

    for strategy in PARSE_STRATEGIES:
        try:
            diagnosis = strategy(data)
        except (AttributeError, TypeError, KeyError, IndexError, ValueError, OverflowError) as e:
            logger.debug(f"Parse strategy {strategy.__name__} failed: {e}")
            continue
        if diagnosis is not None:
            return diagnosis

    raise MalformedUpstreamResponse(
        f"Upstream response did not match any known schema (keys: {sorted(data.keys())[:10]})"
    )


class PlantIdClient:

    def __init__(
        self,
        blob_store: BlobStore,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.blob_store = blob_store
        self.api_key = api_key if api_key is not None else settings.plant_id_api_key
        self.base_url = (base_url or settings.plant_id_api_url).rstrip("/")
        self.timeout = httpx.Timeout(timeout or settings.plant_id_timeout)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_request(self, image_base64: str) -> Dict[str, Any]:
        return {
            "images": [image_base64],
            "health": "all",
            "similar_images": True,
            "disease_details": DISEASE_DETAILS,
            "language": "en",
        }

    async def analyze(self, handle: HandleLike) -> UpstreamDiagnosis:
        """
        Identify crop disease for a stored image.

        Raises:
            NotConfigured: no API key
            UpstreamUnreachable: network failure or timeout
            UpstreamRejected: non-2xx response
            MalformedUpstreamResponse: no parse strategy understood the body
            StorageError: the blob could not be read
        """
        if not self.configured:
            raise NotConfigured("Plant.id API key not configured")

        image_bytes = await self.blob_store.read(handle)
        payload = self.build_request(base64.b64encode(image_bytes).decode("ascii"))
        url = f"{self.base_url}/identification"

        start = time.time()
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"Api-Key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamUnreachable(f"Plant.id request timed out: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamUnreachable(f"Plant.id unreachable: {e}") from e

        elapsed = time.time() - start
        logger.info(f"Plant.id responded {response.status_code} in {elapsed:.2f}s")

        if not response.is_success:
            body = response.text[:500]
            raise UpstreamRejected(
                f"Plant.id API error: {response.status_code} - {body}",
                upstream_status=response.status_code,
                body=body,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedUpstreamResponse(f"Plant.id returned non-JSON body: {e}") from e

        return parse_response(data)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
