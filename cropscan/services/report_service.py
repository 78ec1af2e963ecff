"""
Report Synthesizer

Turns an UpstreamDiagnosis (or nothing, when the upstream call failed) into
a complete CropAnalysis, and renders analyses as plain-text reports.
"""
import logging
import math
from typing import List, Optional

from cropscan.schemas.analysis import (
    HEALTHY,
    SCHEMA_VERSION,
    CostEstimate,
    CropAnalysis,
    Severity,
    SynthesizedAnalysis,
    UpstreamDiagnosis,
    Urgency,
)

logger = logging.getLogger(__name__)

UNKNOWN_CROP = "Unknown crop"
DEFAULT_CONFIDENCE = 50
DEFAULT_CURRENCY = "USD"
DEFAULT_RECOMMENDATIONS = ["Continue routine field monitoring and re-photograph if symptoms appear."]

# Canned result used when no upstream diagnosis is available
FALLBACK_ANALYSIS = CropAnalysis(
    crop_name=UNKNOWN_CROP,
    disease_name=HEALTHY,
    confidence=40,
    severity=Severity.LOW,
    urgency=Urgency.MONITOR,
    estimated_yield_loss_pct=0,
    symptoms=["No clear disease symptoms could be confirmed automatically."],
    causes=[],
    treatments=[],
    prevention=[
        "Maintain regular scouting of the field.",
        "Keep irrigation and fertilisation on schedule.",
    ],
    recommendations=[
        "Automated diagnosis was unavailable; treat this result as provisional.",
        "Upload a closer, well-lit photo of affected leaves for a detailed analysis.",
        "Consult a local agronomist if symptoms develop.",
    ],
    cost_of_treatment=CostEstimate(low=0, high=0, currency=DEFAULT_CURRENCY),
)

SECTIONS = [
    ("Symptoms", "symptoms"),
    ("Causes", "causes"),
    ("Treatments", "treatments"),
    ("Prevention", "prevention"),
    ("Recommendations", "recommendations"),
]


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return value


def _cost(diagnosis: UpstreamDiagnosis) -> CostEstimate:
    low = max(_finite(diagnosis.cost_low) or 0.0, 0.0)
    high = _finite(diagnosis.cost_high)
    high = max(high if high is not None else low, 0.0)
    if low > high:
        low, high = high, low
    currency = (diagnosis.cost_currency or DEFAULT_CURRENCY).upper()
    if len(currency) != 3:
        currency = DEFAULT_CURRENCY
    return CostEstimate(low=low, high=high, currency=currency)


def _clamp(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    return max(0, min(100, int(value)))


class ReportSynthesizer:

    def synthesize(self, raw: Optional[UpstreamDiagnosis]) -> SynthesizedAnalysis:
        """
        Build a complete CropAnalysis.

        Args:
            raw: Parsed upstream diagnosis, or None when the upstream call failed

        Returns:
            SynthesizedAnalysis; is_fallback is True when raw was None
        """
        if raw is None:
            logger.info("No upstream diagnosis, using fallback analysis")
            return SynthesizedAnalysis(
                analysis=FALLBACK_ANALYSIS.model_copy(deep=True),
                is_fallback=True,
                source="fallback",
                schema_version=SCHEMA_VERSION,
            )

        analysis = CropAnalysis(
            crop_name=(raw.crop_name or "").strip() or UNKNOWN_CROP,
            disease_name=(raw.disease_name or "").strip() or HEALTHY,
            confidence=_clamp(raw.confidence, DEFAULT_CONFIDENCE),
            severity=raw.severity or Severity.LOW,
            urgency=raw.urgency or Urgency.MONITOR,
            estimated_yield_loss_pct=_clamp(raw.estimated_yield_loss_pct, 0),
            symptoms=list(raw.symptoms or []),
            causes=list(raw.causes or []),
            treatments=list(raw.treatments or []),
            prevention=list(raw.prevention or []),
            recommendations=list(raw.recommendations) if raw.recommendations else list(DEFAULT_RECOMMENDATIONS),
            cost_of_treatment=_cost(raw),
        )
        return SynthesizedAnalysis(
            analysis=analysis,
            is_fallback=False,
            source=raw.source,
            schema_version=SCHEMA_VERSION,
        )

    def render(self, analysis: CropAnalysis, *, title: Optional[str] = None) -> str:
        """Plain-text report. Same analysis in, same text out."""
        lines: List[str] = ["CROP DISEASE ANALYSIS REPORT"]
        if title:
            lines.append(title)
        lines.append("=" * 40)
        lines.append("")

        lines.append("Diagnosis")
        lines.append("-" * 9)
        lines.append(f"Crop: {analysis.crop_name}")
        disease = "None detected (healthy)" if analysis.is_healthy else analysis.disease_name
        lines.append(f"Disease: {disease}")
        lines.append(f"Confidence: {analysis.confidence}%")
        lines.append(f"Severity: {analysis.severity.value}")
        lines.append(f"Urgency: {analysis.urgency.value.replace('_', ' ')}")
        lines.append(f"Estimated yield loss: {analysis.estimated_yield_loss_pct}%")
        lines.append("")

        for heading, field in SECTIONS:
            items = getattr(analysis, field)
            lines.append(heading)
            lines.append("-" * len(heading))
            if items:
                lines.extend(f"  {i}. {item}" for i, item in enumerate(items, start=1))
            else:
                lines.append("  None")
            lines.append("")

        cost = analysis.cost_of_treatment
        lines.append("Estimated treatment cost")
        lines.append("-" * 24)
        lines.append(f"  {cost.low:.2f} - {cost.high:.2f} {cost.currency}")

        return "\n".join(lines) + "\n"

    def render_json(self, analysis: CropAnalysis) -> dict:
        return analysis.model_dump(mode="json")
