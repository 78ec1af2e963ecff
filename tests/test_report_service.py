import pytest

from cropscan.schemas import HEALTHY, SCHEMA_VERSION, CropAnalysis, Severity, UpstreamDiagnosis, Urgency
from cropscan.services.report_service import FALLBACK_ANALYSIS, ReportSynthesizer, UNKNOWN_CROP


@pytest.fixture
def synthesizer():
    return ReportSynthesizer()


def test_fallback_when_no_diagnosis(synthesizer):
    result = synthesizer.synthesize(None)

    assert result.is_fallback
    assert result.source == "fallback"
    assert result.schema_version == SCHEMA_VERSION
    assert result.analysis == FALLBACK_ANALYSIS
    assert result.analysis.disease_name == HEALTHY
    assert result.analysis.recommendations


def test_fallback_is_a_copy(synthesizer):
    result = synthesizer.synthesize(None)
    result.analysis.recommendations.append("mutated")

    assert "mutated" not in FALLBACK_ANALYSIS.recommendations


def test_sparse_diagnosis_gets_defaults(synthesizer):
    result = synthesizer.synthesize(UpstreamDiagnosis(disease_name="Rust", source="flat"))
    analysis = result.analysis

    assert not result.is_fallback
    assert result.source == "flat"
    assert analysis.crop_name == UNKNOWN_CROP
    assert analysis.disease_name == "Rust"
    assert analysis.confidence == 50
    assert analysis.severity == Severity.LOW
    assert analysis.urgency == Urgency.MONITOR
    assert analysis.symptoms == []
    assert analysis.recommendations
    assert analysis.cost_of_treatment.low == 0
    assert analysis.cost_of_treatment.currency == "USD"


def test_cost_is_sanitised(synthesizer):
    result = synthesizer.synthesize(UpstreamDiagnosis(
        crop_name="Wheat",
        cost_low=80,
        cost_high=20,
        cost_currency="euros",
    ))
    cost = result.analysis.cost_of_treatment

    assert (cost.low, cost.high) == (20, 80)
    assert cost.currency == "USD"


@pytest.mark.parametrize("low, high, expected", [
    (float("nan"), 10.0, (0.0, 10.0)),
    (5.0, float("inf"), (5.0, 5.0)),
    (float("-inf"), float("nan"), (0.0, 0.0)),
])
def test_non_finite_cost_is_ignored(synthesizer, low, high, expected):
    result = synthesizer.synthesize(UpstreamDiagnosis(crop_name="Corn", cost_low=low, cost_high=high))
    cost = result.analysis.cost_of_treatment

    assert (cost.low, cost.high) == expected
    assert not result.is_fallback


def test_synthesized_analysis_is_always_complete(synthesizer):
    result = synthesizer.synthesize(UpstreamDiagnosis(crop_name="  ", confidence=100, estimated_yield_loss_pct=100))

    # Round-trips through validation: every required field is present
    CropAnalysis.model_validate(result.analysis.model_dump())
    assert result.analysis.crop_name == UNKNOWN_CROP


def test_render_is_deterministic(synthesizer):
    analysis = synthesizer.synthesize(UpstreamDiagnosis(
        crop_name="Tomato",
        disease_name="Early blight",
        confidence=87,
        severity=Severity.MEDIUM,
        urgency=Urgency.WITHIN_WEEK,
        symptoms=["Concentric rings"],
        treatments=["Copper fungicide", "Remove lower leaves"],
        cost_low=15,
        cost_high=45.5,
    )).analysis

    first = synthesizer.render(analysis)
    assert first == synthesizer.render(analysis)

    assert first.startswith("CROP DISEASE ANALYSIS REPORT\n")
    assert "Crop: Tomato" in first
    assert "Disease: Early blight" in first
    assert "Confidence: 87%" in first
    assert "Urgency: within week" in first
    assert "  2. Remove lower leaves" in first
    assert "Causes\n------\n  None" in first
    assert "  15.00 - 45.50 USD" in first
    assert first.endswith("\n")


def test_render_healthy_and_title(synthesizer):
    text = synthesizer.render(FALLBACK_ANALYSIS, title="Photo #3 - leaf.jpg")

    assert text.splitlines()[1] == "Photo #3 - leaf.jpg"
    assert "Disease: None detected (healthy)" in text
    assert "Confidence: 40%" in text


def test_render_json(synthesizer):
    data = synthesizer.render_json(FALLBACK_ANALYSIS)

    assert data["severity"] == "low"
    assert data["urgency"] == "monitor"
    assert data["cost_of_treatment"] == {"low": 0.0, "high": 0.0, "currency": "USD"}
