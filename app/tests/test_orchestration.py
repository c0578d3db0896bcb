import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from biotriage.errors import (
    ConcurrentAssessmentFailure,
    HealthPermissionError,
    HealthProviderError,
    InvalidTransition,
    ProviderUnavailableFailure,
)
from biotriage.health import ReadingsHealthProvider
from biotriage.orchestration import (
    Assessing,
    AssessmentRequested,
    AssessmentSucceeded,
    AwaitingPermission,
    AwaitingVitals,
    Complete,
    Failed,
    Idle,
    PermissionDenied,
    PermissionGranted,
    ProceedToAssessment,
    Reset,
    TriageOrchestrator,
    VitalsReady,
    VitalsRetrieved,
    VitalsUnavailable,
    transition,
)
from biotriage.schemas import HealthReading, TriageVerdict, VitalsSnapshot


def _verdict(score: float = 5.0) -> TriageVerdict:
    return TriageVerdict(
        severity_score=score,
        confidence_lower=max(score - 1, 0),
        confidence_upper=min(score + 1, 10),
        explanation="Stub verdict.",
        key_symptoms=["stub"],
        concerning_findings=[],
        recommended_actions=["Rest."],
        urgency_level="urgent",
        time_to_treatment="within 1 hour",
    )


def _vitals(**overrides) -> VitalsSnapshot:
    base = {"timestamp": datetime.now(timezone.utc)}
    base.update(overrides)
    return VitalsSnapshot(**base)


class StubClient:
    model_version = "gemini-stub"

    def __init__(self, score: float = 5.0, *, error: Exception | None = None, gate: asyncio.Event | None = None):
        self._score = score
        self._error = error
        self._gate = gate
        self.calls = []

    async def assess(self, symptoms, vitals=None, demographics=None):
        self.calls.append((symptoms, vitals, demographics))
        if self._gate is not None:
            await self._gate.wait()
        if self._error is not None:
            raise self._error
        return _verdict(self._score)

    async def health_check(self):
        return True


class RecordingSink:
    def __init__(self, *, fail: bool = False):
        self.saved = []
        self._fail = fail

    async def save(self, result, *, patient_id=None, vitals=None):
        if self._fail:
            raise OSError("disk full")
        self.saved.append((result, patient_id))
        return f"mem://{result.assessment_id}"


class BrokenHealth:
    async def get_latest_vitals(self):
        raise HealthProviderError("sensor offline")

    async def has_permission(self):
        return True

    async def request_permission(self):
        return True


def _names(orchestrator: TriageOrchestrator) -> list[str]:
    return [state.name for state in orchestrator.history]


def test_transition_table_basics():
    snapshot = _vitals(heart_rate=80)

    assert isinstance(transition(Idle(), AssessmentRequested(retrieve_vitals=True)), AwaitingVitals)
    assert isinstance(transition(Idle(), AssessmentRequested(vitals=snapshot)), Assessing)
    assert isinstance(transition(AwaitingVitals(), VitalsRetrieved(snapshot=None)), VitalsUnavailable)
    ready = transition(AwaitingVitals(), VitalsRetrieved(snapshot=snapshot))
    assert isinstance(ready, VitalsReady)
    assert transition(ready, ProceedToAssessment()) == Assessing(vitals=snapshot)
    assert isinstance(transition(Assessing(), Reset()), Idle)


def test_illegal_transition_raises():
    with pytest.raises(InvalidTransition):
        transition(Idle(), ProceedToAssessment())
    with pytest.raises(InvalidTransition):
        transition(Assessing(), AssessmentRequested())


def test_supplied_vitals_skip_retrieval_and_complete():
    client = StubClient(score=6.0)
    sink = RecordingSink()
    orchestrator = TriageOrchestrator(client, ReadingsHealthProvider(), sink=sink)
    vitals = _vitals(heart_rate=125)

    async def scenario():
        final = await orchestrator.assess("palpitations", vitals=vitals, patient_id="p1")
        await orchestrator.drain_persistence()
        return final

    final = asyncio.run(scenario())

    assert isinstance(final, Complete)
    assert final.result.severity_score == 8.0
    assert final.result.has_critical_vitals is True
    assert _names(orchestrator) == ["assessing", "complete"]
    assert client.calls[0][1] == vitals
    assert sink.saved[0][1] == "p1"
    assert orchestrator.in_flight is False


def test_retrieves_vitals_from_health_provider():
    reading = HealthReading(
        kind="heart_rate",
        value=72,
        recorded_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    client = StubClient()
    orchestrator = TriageOrchestrator(client, ReadingsHealthProvider([reading]))

    final = asyncio.run(orchestrator.assess("mild cough"))

    assert isinstance(final, Complete)
    assert _names(orchestrator) == ["awaiting_vitals", "vitals_ready", "assessing", "complete"]
    assert client.calls[0][1].heart_rate == 72


def test_no_health_provider_assesses_without_vitals():
    client = StubClient(score=4.0)
    orchestrator = TriageOrchestrator(client)

    final = asyncio.run(orchestrator.assess("sore throat"))

    assert isinstance(final, Complete)
    assert final.result.vitals is None
    assert final.result.severity_score == 4.0
    assert _names(orchestrator) == ["assessing", "complete"]


def test_permission_granted_retries_retrieval_once():
    reading = HealthReading(
        kind="blood_oxygen",
        value=96,
        recorded_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    health = ReadingsHealthProvider([reading], permitted=False, grant_on_request=True)
    orchestrator = TriageOrchestrator(StubClient(), health)

    final = asyncio.run(orchestrator.assess("tired"))

    assert isinstance(final, Complete)
    assert _names(orchestrator) == [
        "awaiting_vitals",
        "awaiting_permission",
        "permission_granted",
        "awaiting_vitals",
        "vitals_ready",
        "assessing",
        "complete",
    ]


def test_permission_denied_still_assesses_without_vitals():
    health = ReadingsHealthProvider([], permitted=False, grant_on_request=False)
    client = StubClient()
    orchestrator = TriageOrchestrator(client, health)

    final = asyncio.run(orchestrator.assess("back pain"))

    assert isinstance(final, Complete)
    assert final.result.vitals is None
    assert _names(orchestrator) == ["awaiting_vitals", "awaiting_permission", "permission_denied", "assessing", "complete"]
    assert isinstance(orchestrator.history[2], PermissionDenied)
    assert client.calls[0][1] is None


def test_second_permission_failure_does_not_prompt_again():
    class StubbornHealth(BrokenHealth):
        prompts = 0

        async def get_latest_vitals(self):
            raise HealthPermissionError("still not permitted")

        async def request_permission(self):
            self.prompts += 1
            return True

    health = StubbornHealth()
    orchestrator = TriageOrchestrator(StubClient(), health)

    final = asyncio.run(orchestrator.assess("chills"))

    assert isinstance(final, Complete)
    assert health.prompts == 1
    assert _names(orchestrator)[-3:] == ["vitals_unavailable", "assessing", "complete"]


def test_health_errors_degrade_to_no_vitals():
    orchestrator = TriageOrchestrator(StubClient(), BrokenHealth())

    final = asyncio.run(orchestrator.assess("nausea"))

    assert isinstance(final, Complete)
    unavailable = orchestrator.history[1]
    assert isinstance(unavailable, VitalsUnavailable)
    assert "sensor offline" in unavailable.reason


def test_assessment_failure_ends_in_failed_state():
    client = StubClient(error=ProviderUnavailableFailure("provider down"))
    sink = RecordingSink()
    orchestrator = TriageOrchestrator(client, sink=sink)

    final = asyncio.run(orchestrator.assess("dizzy"))

    assert isinstance(final, Failed)
    assert final.error_kind == "provider_unavailable"
    assert final.message == "provider down"
    assert sink.saved == []


def test_unexpected_error_is_reported_as_failed():
    orchestrator = TriageOrchestrator(StubClient(error=RuntimeError("boom")))
    final = asyncio.run(orchestrator.assess("dizzy"))
    assert isinstance(final, Failed)
    assert final.error_kind == "unexpected_error"


def test_persistence_failure_does_not_change_result():
    orchestrator = TriageOrchestrator(StubClient(), sink=RecordingSink(fail=True))

    async def scenario():
        final = await orchestrator.assess("headache")
        drained = await orchestrator.drain_persistence()
        return final, drained

    final, drained = asyncio.run(scenario())
    assert isinstance(final, Complete)
    assert drained is True
    assert orchestrator.state is final


def test_hung_sink_does_not_delay_result():
    class HungSink:
        async def save(self, result, *, patient_id=None, vitals=None):
            await asyncio.sleep(3600)

    orchestrator = TriageOrchestrator(StubClient(), sink=HungSink())

    async def scenario():
        final = await asyncio.wait_for(orchestrator.assess("headache"), timeout=0.5)
        drained = await orchestrator.drain_persistence(timeout=0.01)
        return final, drained

    final, drained = asyncio.run(scenario())
    assert isinstance(final, Complete)
    assert drained is False


def test_concurrent_request_is_rejected():
    async def scenario():
        gate = asyncio.Event()
        client = StubClient(gate=gate)
        orchestrator = TriageOrchestrator(client)

        first = asyncio.create_task(orchestrator.assess("first"))
        await asyncio.sleep(0)
        assert isinstance(orchestrator.state, Assessing)

        with pytest.raises(ConcurrentAssessmentFailure):
            await orchestrator.assess("second")

        gate.set()
        final = await first
        return final, client.calls

    final, calls = asyncio.run(scenario())
    assert isinstance(final, Complete)
    assert [c[0] for c in calls] == ["first"]


def test_reset_discards_late_result():
    async def scenario():
        gate = asyncio.Event()
        sink = RecordingSink()
        orchestrator = TriageOrchestrator(StubClient(gate=gate), sink=sink)
        seen = []
        orchestrator.subscribe(lambda state: seen.append(state.name))

        first = asyncio.create_task(orchestrator.assess("first"))
        await asyncio.sleep(0)
        orchestrator.reset()
        gate.set()
        outcome = await first
        return orchestrator, outcome, seen, sink

    orchestrator, outcome, seen, sink = asyncio.run(scenario())
    assert outcome is None
    assert isinstance(orchestrator.state, Idle)
    assert seen == ["assessing", "idle"]
    assert sink.saved == []


def test_new_request_allowed_after_completion():
    orchestrator = TriageOrchestrator(StubClient())

    async def scenario():
        first = await orchestrator.assess("one")
        second = await orchestrator.assess("two")
        return first, second

    first, second = asyncio.run(scenario())
    assert isinstance(first, Complete)
    assert isinstance(second, Complete)
    assert first.result.assessment_id != second.result.assessment_id


def test_unsubscribe_stops_notifications():
    orchestrator = TriageOrchestrator(StubClient())
    seen = []
    unsubscribe = orchestrator.subscribe(lambda state: seen.append(state.name))
    unsubscribe()

    asyncio.run(orchestrator.assess("cough"))
    assert seen == []


def test_health_status_reports_both_dependencies():
    orchestrator = TriageOrchestrator(StubClient(), ReadingsHealthProvider(permitted=False))
    status = asyncio.run(orchestrator.health_status())
    assert status == {"assessment_provider": True, "health_permissions": False}


def test_state_payloads_name_the_state():
    assert AwaitingPermission().to_payload() == {"state": "awaiting_permission"}
    assert PermissionGranted().to_payload() == {"state": "permission_granted"}
    assert Failed(error_kind="safety_blocked", message="x").to_payload()["error_kind"] == "safety_blocked"


async def _complete_result():
    orchestrator = TriageOrchestrator(StubClient())
    final = await orchestrator.assess("cough")
    assert isinstance(final, Complete)
    return final.result


def test_assessment_succeeded_rejected_outside_assessing():
    result = asyncio.run(_complete_result())
    with pytest.raises(InvalidTransition):
        transition(Idle(), AssessmentSucceeded(result=result))
