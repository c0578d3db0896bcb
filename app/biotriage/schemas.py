"""Pydantic schemas for the triage engine and its provider contracts."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from biotriage.vitals import vitals_explanation


UrgencyLevel = Literal["critical", "urgent", "standard", "non_urgent"]
PriorityTier = Literal["non_urgent", "standard", "urgent", "high_priority", "critical"]

_URGENCY_LABELS = {
    "critical": "CRITICAL",
    "urgent": "URGENT",
    "standard": "STANDARD",
    "non_urgent": "NON-URGENT",
}


def _normalize_token(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return value.strip().lower().replace("-", "_").replace(" ", "_")


class VitalsSnapshot(BaseModel):
    """One wearable observation. Missing fields mean unknown, not normal."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    heart_rate: int | None = Field(default=None, ge=0, le=350)
    blood_pressure: str | None = None
    temperature: float | None = None
    oxygen_saturation: float | None = Field(default=None, ge=0.0, le=100.0)
    respiratory_rate: int | None = Field(default=None, ge=0, le=120)
    heart_rate_variability: float | None = Field(default=None, ge=0.0)
    timestamp: datetime
    device_source: str | None = None
    data_quality: float | None = Field(default=None, ge=0.0, le=1.0)


class TriageVerdict(BaseModel):
    """Validated AI verdict, before vitals fusion."""

    model_config = ConfigDict(frozen=True)

    # Strict: numeric strings such as "7" are rejected.
    severity_score: float = Field(ge=0.0, le=10.0, strict=True)
    confidence_lower: float = Field(ge=0.0, le=10.0, strict=True)
    confidence_upper: float = Field(ge=0.0, le=10.0, strict=True)
    explanation: str = Field(min_length=1)
    key_symptoms: list[str]
    concerning_findings: list[str]
    recommended_actions: list[str]
    urgency_level: UrgencyLevel
    time_to_treatment: str = Field(min_length=1)

    @field_validator("severity_score", "confidence_lower", "confidence_upper", mode="before")
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("score must be numeric")
        return value

    @field_validator("urgency_level", mode="before")
    @classmethod
    def _normalize_urgency(cls, value: Any) -> Any:
        return _normalize_token(value)

    @model_validator(mode="after")
    def _ordered_bounds(self) -> TriageVerdict:
        if self.confidence_lower > self.confidence_upper:
            raise ValueError("confidence_lower must be <= confidence_upper")
        return self


class TriageResult(BaseModel):
    """Final fused assessment handed to persistence and presentation."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    assessment_id: str
    severity_score: float = Field(ge=0.0, le=10.0)
    ai_severity_score: float = Field(ge=0.0, le=10.0)
    confidence_lower: float = Field(ge=0.0, le=10.0)
    confidence_upper: float = Field(ge=0.0, le=10.0)
    urgency_level: UrgencyLevel
    priority_tier: PriorityTier
    explanation: str
    key_symptoms: list[str]
    concerning_findings: list[str]
    recommended_actions: list[str]
    time_to_treatment: str
    vitals: VitalsSnapshot | None = None
    vitals_contribution: float = Field(default=0.0, ge=0.0, le=3.0)
    has_critical_vitals: bool = False
    ai_model_version: str
    timestamp: datetime

    @property
    def is_critical(self) -> bool:
        return self.urgency_level == "critical"

    @property
    def requires_immediate_attention(self) -> bool:
        return self.severity_score >= 8.0

    @property
    def urgency_label(self) -> str:
        return _URGENCY_LABELS[self.urgency_level]

    @property
    def vitals_explanation(self) -> str:
        return vitals_explanation(self.vitals, self.vitals_contribution)

    def to_record(self) -> dict[str, Any]:
        """Document-store mapping: camelCase keys, ISO-8601 timestamps."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> TriageResult:
        return cls.model_validate(record)


class SafetySetting(BaseModel):
    category: str
    threshold: str


class SafetyRating(BaseModel):
    category: str
    probability: str
    blocked: bool = False


class ModelParams(BaseModel):
    model: str
    max_output_tokens: int = 500
    temperature: float = 0.3
    top_k: int = 40
    top_p: float = 0.9


class ProviderResponse(BaseModel):
    """Raw provider output before safety screening and verdict parsing."""

    text: str = ""
    finish_reason: str | None = None
    block_reason: str | None = None
    safety_ratings: list[SafetyRating] = Field(default_factory=list)


ReadingKind = Literal[
    "heart_rate",
    "blood_pressure_systolic",
    "blood_pressure_diastolic",
    "body_temperature",
    "blood_oxygen",
    "respiratory_rate",
    "heart_rate_variability",
]


class HealthReading(BaseModel):
    """Single raw sample from a wearable or health platform."""

    model_config = ConfigDict(frozen=True)

    kind: ReadingKind
    value: float
    recorded_at: datetime
    source: str = "Unknown"

    @field_validator("recorded_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AssessmentRequest(BaseModel):
    symptoms: str = Field(min_length=1)
    patient_id: str | None = None
    vitals: VitalsSnapshot | None = None
    readings: list[HealthReading] = Field(default_factory=list)
    retrieve_vitals: bool = True
    demographics: dict[str, Any] | None = None
