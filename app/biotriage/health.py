"""Health-data provider contract and the readings-backed adapter.

`snapshot_from_readings` folds raw wearable samples into one `VitalsSnapshot`:
newest value per type, blood pressure paired by timestamp, Celsius readings
converted to Fahrenheit, and a data-quality score from freshness and
completeness.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Protocol

from biotriage.errors import HealthPermissionError
from biotriage.schemas import HealthReading, VitalsSnapshot
from biotriage.utils import clamp, utc_now

READINGS_WINDOW = timedelta(days=1)
# Body temperatures below this are taken to be Celsius.
CELSIUS_CUTOFF = 50.0
CORE_VITALS_COUNT = 5


class HealthDataProvider(Protocol):
    async def get_latest_vitals(self) -> VitalsSnapshot | None: ...

    async def has_permission(self) -> bool: ...

    async def request_permission(self) -> bool: ...


def _to_fahrenheit(value: float) -> float:
    if value < CELSIUS_CUTOFF:
        return round(value * 9 / 5 + 32, 1)
    return value


def data_quality(latest: datetime, vital_count: int, *, now: datetime) -> float:
    age_minutes = (now - latest).total_seconds() / 60.0
    quality = 1.0
    if age_minutes > 60:
        quality *= 0.8
    if age_minutes > 180:
        quality *= 0.6
    if age_minutes > 360:
        quality *= 0.4
    quality *= clamp(vital_count / CORE_VITALS_COUNT, 0.3, 1.0)
    return round(quality, 3)


def snapshot_from_readings(
    readings: Iterable[HealthReading],
    *,
    now: datetime | None = None,
    window: timedelta = READINGS_WINDOW,
) -> VitalsSnapshot | None:
    now = now or utc_now()
    recent = sorted(
        (r for r in readings if now - window <= r.recorded_at <= now),
        key=lambda r: r.recorded_at,
        reverse=True,
    )
    if not recent:
        return None

    heart_rate: int | None = None
    blood_pressure: str | None = None
    temperature: float | None = None
    oxygen_saturation: float | None = None
    respiratory_rate: int | None = None
    hrv: float | None = None
    device_source: str | None = None
    used: list[datetime] = []

    diastolic_by_time = {
        r.recorded_at: r.value for r in reversed(recent) if r.kind == "blood_pressure_diastolic"
    }

    for reading in recent:
        if reading.kind == "heart_rate" and heart_rate is None:
            heart_rate = int(reading.value)
            device_source = reading.source
            used.append(reading.recorded_at)
        elif reading.kind == "blood_pressure_systolic" and blood_pressure is None:
            diastolic = diastolic_by_time.get(reading.recorded_at)
            if diastolic is not None:
                blood_pressure = f"{int(reading.value)}/{int(diastolic)}"
                used.append(reading.recorded_at)
        elif reading.kind == "body_temperature" and temperature is None:
            temperature = _to_fahrenheit(reading.value)
            used.append(reading.recorded_at)
        elif reading.kind == "blood_oxygen" and oxygen_saturation is None:
            oxygen_saturation = reading.value
            used.append(reading.recorded_at)
        elif reading.kind == "respiratory_rate" and respiratory_rate is None:
            respiratory_rate = int(reading.value)
            used.append(reading.recorded_at)
        elif reading.kind == "heart_rate_variability" and hrv is None:
            hrv = reading.value

    if not used:
        return None

    latest = max(used)
    present = [heart_rate, blood_pressure, temperature, oxygen_saturation, respiratory_rate]
    return VitalsSnapshot(
        heart_rate=heart_rate,
        blood_pressure=blood_pressure,
        temperature=temperature,
        oxygen_saturation=oxygen_saturation,
        respiratory_rate=respiratory_rate,
        heart_rate_variability=hrv,
        timestamp=latest,
        device_source=device_source or recent[0].source,
        data_quality=data_quality(latest, sum(v is not None for v in present), now=now),
    )


class StaticHealthProvider:
    """Returns one fixed snapshot; permission behaves like ReadingsHealthProvider."""

    def __init__(
        self,
        snapshot: VitalsSnapshot | None,
        *,
        permitted: bool = True,
        grant_on_request: bool = True,
    ):
        self._snapshot = snapshot
        self._permitted = permitted
        self._grant_on_request = grant_on_request

    async def get_latest_vitals(self) -> VitalsSnapshot | None:
        if not self._permitted:
            raise HealthPermissionError("health data access not granted")
        return self._snapshot

    async def has_permission(self) -> bool:
        return self._permitted

    async def request_permission(self) -> bool:
        self._permitted = self._grant_on_request
        return self._permitted


class ReadingsHealthProvider:
    """In-memory provider over a list of raw readings.

    Permission is scripted: `permitted` is the current grant, and
    `grant_on_request` is what a permission prompt would answer.
    """

    def __init__(
        self,
        readings: Iterable[HealthReading] = (),
        *,
        permitted: bool = True,
        grant_on_request: bool = True,
    ):
        self._readings = list(readings)
        self._permitted = permitted
        self._grant_on_request = grant_on_request

    def add_reading(self, reading: HealthReading) -> None:
        self._readings.append(reading)

    async def get_latest_vitals(self) -> VitalsSnapshot | None:
        if not self._permitted:
            raise HealthPermissionError("health data access not granted")
        snapshot = snapshot_from_readings(self._readings)
        if snapshot is None:
            print("[biotriage] health_no_recent_readings")
        return snapshot

    async def has_permission(self) -> bool:
        return self._permitted

    async def request_permission(self) -> bool:
        self._permitted = self._grant_on_request
        print(f"[biotriage] health_permission_requested: granted={self._permitted}")
        return self._permitted
