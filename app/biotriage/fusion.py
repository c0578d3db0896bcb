"""Fusion of the AI verdict with the vitals boost into the final result."""

from __future__ import annotations

from uuid import uuid4

from biotriage.schemas import PriorityTier, TriageResult, TriageVerdict, UrgencyLevel, VitalsSnapshot
from biotriage.utils import clamp, utc_now
from biotriage.vitals import has_critical_vitals, vitals_severity_boost

# Lower bound of each band on the 0-10 rubric, highest first.
_PRIORITY_BANDS: tuple[tuple[float, PriorityTier], ...] = (
    (9.0, "critical"),
    (7.0, "high_priority"),
    (5.0, "urgent"),
    (3.0, "standard"),
    (0.0, "non_urgent"),
)

_TIER_TO_URGENCY: dict[str, UrgencyLevel] = {
    "critical": "critical",
    "high_priority": "critical",
    "urgent": "urgent",
    "standard": "standard",
    "non_urgent": "non_urgent",
}


def priority_tier_for_score(score: float) -> PriorityTier:
    for floor, tier in _PRIORITY_BANDS:
        if score >= floor:
            return tier
    return "non_urgent"


def urgency_for_score(score: float) -> UrgencyLevel:
    return _TIER_TO_URGENCY[priority_tier_for_score(score)]


def fuse(
    verdict: TriageVerdict,
    vitals: VitalsSnapshot | None,
    *,
    model_version: str = "unknown",
) -> TriageResult:
    """Apply the vitals boost and re-derive the tier from the boosted score.

    The tier always follows the post-boost score; the AI-assigned tier is
    discarded. Pure, no I/O.
    """
    contribution = vitals_severity_boost(vitals) if vitals is not None else 0.0
    final_score = clamp(verdict.severity_score + contribution, 0.0, 10.0)
    lower = clamp(verdict.confidence_lower + contribution, 0.0, 10.0)
    upper = clamp(verdict.confidence_upper + contribution, 0.0, 10.0)
    tier = priority_tier_for_score(final_score)

    return TriageResult(
        assessment_id=str(uuid4()),
        severity_score=final_score,
        ai_severity_score=verdict.severity_score,
        confidence_lower=lower,
        confidence_upper=upper,
        urgency_level=_TIER_TO_URGENCY[tier],
        priority_tier=tier,
        explanation=verdict.explanation,
        key_symptoms=list(verdict.key_symptoms),
        concerning_findings=list(verdict.concerning_findings),
        recommended_actions=list(verdict.recommended_actions),
        time_to_treatment=verdict.time_to_treatment,
        vitals=vitals,
        vitals_contribution=contribution,
        has_critical_vitals=has_critical_vitals(vitals) if vitals is not None else False,
        ai_model_version=model_version,
        timestamp=utc_now(),
    )
