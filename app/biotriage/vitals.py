"""Vitals risk evaluation: critical-vitals flag and bounded severity boost.

Everything here is pure and deterministic. Absent or unparseable readings are
skipped rather than treated as normal or as errors.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from biotriage.schemas import VitalsSnapshot

MAX_VITALS_BOOST = 3.0

TACHYCARDIA_BPM = 120
ELEVATED_HR_BPM = 100
BRADYCARDIA_BPM = 50
HYPOXEMIA_PCT = 90.0
LOW_SPO2_PCT = 95.0
FEVER_F = 101.5
HIGH_FEVER_F = 103.0
CRISIS_SYSTOLIC = 180
CRISIS_DIASTOLIC = 120
LOW_SYSTOLIC = 90
LOW_DIASTOLIC = 60

_BLOOD_PRESSURE = re.compile(r"\s*([0-9]{1,3})\s*/\s*([0-9]{1,3})\s*")


def parse_blood_pressure(value: str | None) -> tuple[int, int] | None:
    """Parse "systolic/diastolic". Returns None for anything else."""
    if not value:
        return None
    match = _BLOOD_PRESSURE.fullmatch(str(value))
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def _bp_crisis(systolic: int, diastolic: int) -> bool:
    return systolic > CRISIS_SYSTOLIC or diastolic > CRISIS_DIASTOLIC


def _bp_low(systolic: int, diastolic: int) -> bool:
    return systolic < LOW_SYSTOLIC or diastolic < LOW_DIASTOLIC


def has_critical_vitals(snapshot: VitalsSnapshot) -> bool:
    hr = snapshot.heart_rate
    if hr is not None and (hr > TACHYCARDIA_BPM or hr < BRADYCARDIA_BPM):
        return True

    if snapshot.oxygen_saturation is not None and snapshot.oxygen_saturation < HYPOXEMIA_PCT:
        return True

    if snapshot.temperature is not None and snapshot.temperature > FEVER_F:
        return True

    bp = parse_blood_pressure(snapshot.blood_pressure)
    if bp is not None and (_bp_crisis(*bp) or _bp_low(*bp)):
        return True

    return False


def _heart_rate_boost(hr: int | None) -> float:
    if hr is None:
        return 0.0
    if hr > TACHYCARDIA_BPM:
        return 2.0
    if hr < BRADYCARDIA_BPM:
        return 2.5
    if hr > ELEVATED_HR_BPM:
        return 1.0
    return 0.0


def _oxygen_boost(spo2: float | None) -> float:
    if spo2 is None:
        return 0.0
    if spo2 < HYPOXEMIA_PCT:
        return 3.0
    if spo2 < LOW_SPO2_PCT:
        return 1.5
    return 0.0


def _temperature_boost(temp_f: float | None) -> float:
    if temp_f is None:
        return 0.0
    if temp_f > HIGH_FEVER_F:
        return 2.5
    if temp_f > FEVER_F:
        return 1.5
    return 0.0


def _blood_pressure_boost(value: str | None) -> float:
    bp = parse_blood_pressure(value)
    if bp is None:
        return 0.0
    if _bp_crisis(*bp):
        return 3.0
    if _bp_low(*bp):
        return 2.0
    return 0.0


def vitals_severity_boost(snapshot: VitalsSnapshot) -> float:
    """Sum per-field contributions, then cap the total to [0, 3]."""
    total = (
        _heart_rate_boost(snapshot.heart_rate)
        + _oxygen_boost(snapshot.oxygen_saturation)
        + _temperature_boost(snapshot.temperature)
        + _blood_pressure_boost(snapshot.blood_pressure)
    )
    return max(0.0, min(MAX_VITALS_BOOST, total))


def abnormal_findings(snapshot: VitalsSnapshot) -> list[str]:
    findings: list[str] = []

    hr = snapshot.heart_rate
    if hr is not None:
        if hr > TACHYCARDIA_BPM:
            findings.append(f"elevated heart rate ({hr} bpm)")
        elif hr < BRADYCARDIA_BPM:
            findings.append(f"low heart rate ({hr} bpm)")
        elif hr > ELEVATED_HR_BPM:
            findings.append(f"mildly elevated heart rate ({hr} bpm)")

    spo2 = snapshot.oxygen_saturation
    if spo2 is not None and spo2 < LOW_SPO2_PCT:
        findings.append(f"low oxygen saturation ({spo2:g}%)")

    temp = snapshot.temperature
    if temp is not None and temp > FEVER_F:
        findings.append(f"fever ({temp:g}°F)")

    bp = parse_blood_pressure(snapshot.blood_pressure)
    if bp is not None:
        if _bp_crisis(*bp):
            findings.append(f"hypertensive blood pressure ({bp[0]}/{bp[1]})")
        elif _bp_low(*bp):
            findings.append(f"low blood pressure ({bp[0]}/{bp[1]})")

    return findings


def vitals_explanation(snapshot: VitalsSnapshot | None, contribution: float) -> str:
    if snapshot is None or not contribution:
        return "No wearable vitals data contributed to this assessment."

    findings = abnormal_findings(snapshot)
    if not findings:
        return f"Vitals data contributed +{contribution:.1f} points to the severity score."
    return (
        f"Concerning vitals detected: {', '.join(findings)}. "
        f"This increased the severity score by +{contribution:.1f} points."
    )
