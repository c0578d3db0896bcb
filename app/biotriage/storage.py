"""Local persistence sink for finalized triage results.

Results are written as JSON documents in the document-store record shape
(camelCase keys) under `<root>/results/`, with a per-patient index under
`<root>/patients/` and an append-only event log under `<root>/logs/`.
Subscribers get new results for a patient pushed onto an asyncio queue.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from pathlib import Path
from typing import Any

from biotriage.config import Settings
from biotriage.schemas import TriageResult, VitalsSnapshot
from biotriage.utils import utc_now

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]+")


class ResultStore:
    def __init__(self, settings: Settings):
        self._root = Path(settings.local_storage_dir)
        (self._root / "results").mkdir(parents=True, exist_ok=True)
        (self._root / "patients").mkdir(parents=True, exist_ok=True)
        (self._root / "logs").mkdir(parents=True, exist_ok=True)
        self._events_file = self._root / "logs" / "events.jsonl"
        self._subscribers: dict[str, list[asyncio.Queue[TriageResult]]] = {}

    @staticmethod
    def _key(value: str) -> str:
        cleaned = _SAFE_KEY.sub("_", value).strip("._")
        if not cleaned:
            raise ValueError(f"unusable storage key: {value!r}")
        return cleaned

    def _result_path(self, assessment_id: str) -> Path:
        return self._root / "results" / f"{self._key(assessment_id)}.json"

    def _patient_index(self, patient_id: str) -> Path:
        # Hashed so distinct ids never share an index file.
        digest = hashlib.sha256(patient_id.encode("utf-8")).hexdigest()
        return self._root / "patients" / f"{digest}.jsonl"

    async def save(
        self,
        result: TriageResult,
        *,
        patient_id: str | None = None,
        vitals: VitalsSnapshot | None = None,
    ) -> str:
        stored_vitals = vitals or result.vitals
        record: dict[str, Any] = {
            "patientId": patient_id,
            "result": result.to_record(),
            "vitals": stored_vitals.model_dump(mode="json", by_alias=True) if stored_vitals else None,
            "storedAt": utc_now().isoformat(),
        }
        path = self._result_path(result.assessment_id)
        path.write_text(json.dumps(record, ensure_ascii=True, indent=2, default=str), encoding="utf-8")

        if patient_id:
            entry = {
                "patientId": patient_id,
                "assessmentId": result.assessment_id,
                "timestamp": result.timestamp.isoformat(),
            }
            with self._patient_index(patient_id).open("a", encoding="utf-8") as fp:
                fp.write(json.dumps(entry, ensure_ascii=True) + "\n")
            for queue in self._subscribers.get(patient_id, []):
                queue.put_nowait(result)

        await self.append_event(
            "result.saved",
            {"assessment_id": result.assessment_id, "patient_id": patient_id},
        )
        return str(path)

    def read_result(self, assessment_id: str) -> TriageResult | None:
        path = self._result_path(assessment_id)
        if not path.exists():
            return None
        record = json.loads(path.read_text(encoding="utf-8"))
        return TriageResult.from_record(record["result"])

    def query_by_patient(self, patient_id: str, *, limit: int | None = None) -> list[TriageResult]:
        """Stored results for a patient, newest first."""
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        index = self._patient_index(patient_id)
        if not index.exists():
            return []

        results: list[TriageResult] = []
        for line in index.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            entry = json.loads(line)
            if entry.get("patientId") != patient_id:
                continue
            result = self.read_result(entry["assessmentId"])
            if result is not None:
                results.append(result)
        results.sort(key=lambda r: r.timestamp, reverse=True)
        return results[:limit] if limit is not None else results

    def subscribe(self, patient_id: str) -> asyncio.Queue[TriageResult]:
        queue: asyncio.Queue[TriageResult] = asyncio.Queue()
        self._subscribers.setdefault(patient_id, []).append(queue)
        return queue

    def unsubscribe(self, patient_id: str, queue: asyncio.Queue[TriageResult]) -> None:
        queues = self._subscribers.get(patient_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(patient_id, None)

    async def append_event(self, event_name: str, payload: dict[str, Any]) -> None:
        envelope = {
            "timestamp": utc_now().isoformat(),
            "event": event_name,
            "payload": payload,
        }
        with self._events_file.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(envelope, ensure_ascii=True, default=str) + "\n")
