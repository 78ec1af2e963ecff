from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

# Bumped whenever CropAnalysis changes shape
SCHEMA_VERSION = "1"

HEALTHY = "healthy"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    WITHIN_WEEK = "within_week"
    WITHIN_MONTH = "within_month"
    MONITOR = "monitor"


class CostEstimate(BaseModel):
    low: float = Field(..., ge=0)
    high: float = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)

    @model_validator(mode="after")
    def check_range(self):
        if self.low > self.high:
            raise ValueError("cost low must not exceed high")
        return self


class CropAnalysis(BaseModel):
    """Canonical diagnosis. No field is optional."""
    crop_name: str
    disease_name: str
    confidence: int = Field(..., ge=0, le=100)
    severity: Severity
    urgency: Urgency
    estimated_yield_loss_pct: int = Field(..., ge=0, le=100)
    symptoms: List[str]
    causes: List[str]
    treatments: List[str]
    prevention: List[str]
    recommendations: List[str]
    cost_of_treatment: CostEstimate

    @property
    def is_healthy(self) -> bool:
        return self.disease_name == HEALTHY


class UpstreamDiagnosis(BaseModel):
    """
    What the vision client could read out of an upstream response.

    Every field is optional; the report synthesizer fills the gaps.
    """
    crop_name: Optional[str] = None
    disease_name: Optional[str] = None
    confidence: Optional[int] = None
    severity: Optional[Severity] = None
    urgency: Optional[Urgency] = None
    estimated_yield_loss_pct: Optional[int] = None
    symptoms: Optional[List[str]] = None
    causes: Optional[List[str]] = None
    treatments: Optional[List[str]] = None
    prevention: Optional[List[str]] = None
    recommendations: Optional[List[str]] = None
    cost_low: Optional[float] = None
    cost_high: Optional[float] = None
    cost_currency: Optional[str] = None
    source: str = "unknown"  # parse strategy that matched


class SynthesizedAnalysis(BaseModel):
    analysis: CropAnalysis
    is_fallback: bool
    source: str
    schema_version: str = SCHEMA_VERSION
