"""Triage workflow: tagged-variant states, a pure transition function, and the async driver.

One orchestrator runs at most one assessment at a time. Each request moves
through vitals retrieval (optionally via a permission prompt) before the AI
assessment is issued, and always ends in Complete or Failed unless it is
abandoned with `reset()`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Protocol, Union

from biotriage.assessment import AssessmentClient
from biotriage.errors import AssessmentFailure, ConcurrentAssessmentFailure, HealthPermissionError, InvalidTransition
from biotriage.fusion import fuse
from biotriage.health import HealthDataProvider
from biotriage.schemas import TriageResult, VitalsSnapshot


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _State:
    name: ClassVar[str] = "state"

    def to_payload(self) -> dict[str, Any]:
        return {"state": self.name}


@dataclass(frozen=True)
class Idle(_State):
    name: ClassVar[str] = "idle"


@dataclass(frozen=True)
class AwaitingVitals(_State):
    name: ClassVar[str] = "awaiting_vitals"
    # Set on the single re-read that follows a granted permission prompt.
    after_permission_grant: bool = False


@dataclass(frozen=True)
class VitalsReady(_State):
    name: ClassVar[str] = "vitals_ready"
    snapshot: VitalsSnapshot

    def to_payload(self) -> dict[str, Any]:
        return {"state": self.name, "vitals": self.snapshot.model_dump(mode="json")}


@dataclass(frozen=True)
class VitalsUnavailable(_State):
    name: ClassVar[str] = "vitals_unavailable"
    reason: str

    def to_payload(self) -> dict[str, Any]:
        return {"state": self.name, "reason": self.reason}


@dataclass(frozen=True)
class AwaitingPermission(_State):
    name: ClassVar[str] = "awaiting_permission"


@dataclass(frozen=True)
class PermissionGranted(_State):
    name: ClassVar[str] = "permission_granted"


@dataclass(frozen=True)
class PermissionDenied(_State):
    name: ClassVar[str] = "permission_denied"
    reason: str = "denied"

    def to_payload(self) -> dict[str, Any]:
        return {"state": self.name, "reason": self.reason}


@dataclass(frozen=True)
class Assessing(_State):
    name: ClassVar[str] = "assessing"
    vitals: VitalsSnapshot | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"state": self.name, "has_vitals": self.vitals is not None}


@dataclass(frozen=True)
class Complete(_State):
    name: ClassVar[str] = "complete"
    result: TriageResult

    def to_payload(self) -> dict[str, Any]:
        return {"state": self.name, "result": self.result.model_dump(mode="json")}


@dataclass(frozen=True)
class Failed(_State):
    name: ClassVar[str] = "failed"
    error_kind: str
    message: str

    def to_payload(self) -> dict[str, Any]:
        return {"state": self.name, "error_kind": self.error_kind, "message": self.message}


OrchestrationState = Union[
    Idle,
    AwaitingVitals,
    VitalsReady,
    VitalsUnavailable,
    AwaitingPermission,
    PermissionGranted,
    PermissionDenied,
    Assessing,
    Complete,
    Failed,
]

_RESTING_STATES = (Idle, Complete, Failed)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssessmentRequested:
    vitals: VitalsSnapshot | None = None
    retrieve_vitals: bool = False


@dataclass(frozen=True)
class VitalsRetrieved:
    snapshot: VitalsSnapshot | None


@dataclass(frozen=True)
class VitalsRetrievalFailed:
    reason: str
    permission_missing: bool = False


@dataclass(frozen=True)
class PermissionResolved:
    granted: bool
    reason: str = ""


@dataclass(frozen=True)
class RetryVitals:
    pass


@dataclass(frozen=True)
class ProceedToAssessment:
    pass


@dataclass(frozen=True)
class AssessmentSucceeded:
    result: TriageResult


@dataclass(frozen=True)
class AssessmentFailed:
    error_kind: str
    message: str


@dataclass(frozen=True)
class Reset:
    pass


WorkflowEvent = Union[
    AssessmentRequested,
    VitalsRetrieved,
    VitalsRetrievalFailed,
    PermissionResolved,
    RetryVitals,
    ProceedToAssessment,
    AssessmentSucceeded,
    AssessmentFailed,
    Reset,
]


def transition(state: OrchestrationState, event: WorkflowEvent) -> OrchestrationState:
    """Return the next state, or raise InvalidTransition for an illegal pair."""
    if isinstance(event, Reset):
        return Idle()

    if isinstance(state, _RESTING_STATES) and isinstance(event, AssessmentRequested):
        if event.vitals is None and event.retrieve_vitals:
            return AwaitingVitals()
        return Assessing(vitals=event.vitals)

    if isinstance(state, AwaitingVitals):
        if isinstance(event, VitalsRetrieved):
            if event.snapshot is None:
                return VitalsUnavailable(reason="no data")
            return VitalsReady(snapshot=event.snapshot)
        if isinstance(event, VitalsRetrievalFailed):
            # Only one permission prompt per request.
            if event.permission_missing and not state.after_permission_grant:
                return AwaitingPermission()
            return VitalsUnavailable(reason=event.reason)

    if isinstance(state, AwaitingPermission) and isinstance(event, PermissionResolved):
        if event.granted:
            return PermissionGranted()
        return PermissionDenied(reason=event.reason or "denied")

    if isinstance(state, PermissionGranted) and isinstance(event, RetryVitals):
        return AwaitingVitals(after_permission_grant=True)

    if isinstance(event, ProceedToAssessment):
        if isinstance(state, VitalsReady):
            return Assessing(vitals=state.snapshot)
        if isinstance(state, (VitalsUnavailable, PermissionDenied)):
            return Assessing(vitals=None)

    if isinstance(state, Assessing):
        if isinstance(event, AssessmentSucceeded):
            return Complete(result=event.result)
        if isinstance(event, AssessmentFailed):
            return Failed(error_kind=event.error_kind, message=event.message)

    raise InvalidTransition(state, event)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

StateListener = Callable[[OrchestrationState], None]


class ResultSink(Protocol):
    async def save(
        self,
        result: TriageResult,
        *,
        patient_id: str | None = None,
        vitals: VitalsSnapshot | None = None,
    ) -> str: ...


class TriageOrchestrator:
    def __init__(
        self,
        client: AssessmentClient,
        health: HealthDataProvider | None = None,
        *,
        sink: ResultSink | None = None,
    ):
        self._client = client
        self._health = health
        self._sink = sink
        self._state: OrchestrationState = Idle()
        self._generation = 0
        self._history: list[OrchestrationState] = [self._state]
        self._listeners: list[StateListener] = []
        self._pending_saves: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> OrchestrationState:
        return self._state

    @property
    def history(self) -> tuple[OrchestrationState, ...]:
        """States entered by the current (or most recent) request."""
        return tuple(self._history)

    @property
    def in_flight(self) -> bool:
        return not isinstance(self._state, _RESTING_STATES)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _commit(self, state: OrchestrationState) -> None:
        self._state = state
        self._history.append(state)
        for listener in list(self._listeners):
            listener(state)

    def _apply(self, generation: int, event: WorkflowEvent) -> bool:
        if generation != self._generation:
            print(f"[biotriage] stale_event_dropped: {type(event).__name__} generation={generation}")
            return False
        self._commit(transition(self._state, event))
        return True

    def reset(self) -> None:
        """Return to Idle. Provider calls already issued finish but their results are dropped."""
        if self.in_flight:
            print(f"[biotriage] assessment_abandoned: state={self._state.name}")
        self._generation += 1
        self._history = []
        self._commit(transition(self._state, Reset()))

    async def assess(
        self,
        symptoms: str,
        *,
        vitals: VitalsSnapshot | None = None,
        demographics: dict[str, Any] | None = None,
        retrieve_vitals: bool = True,
        patient_id: str | None = None,
    ) -> OrchestrationState | None:
        """Run one assessment request.

        Returns the terminal Complete/Failed state, or None if the request was
        abandoned by `reset()` before it finished. Raises
        ConcurrentAssessmentFailure immediately when another request is in
        flight.
        """
        if self.in_flight:
            raise ConcurrentAssessmentFailure(
                f"an assessment is already in progress (state={self._state.name})"
            )

        self._generation += 1
        generation = self._generation
        self._history = []
        self._apply(
            generation,
            AssessmentRequested(
                vitals=vitals,
                retrieve_vitals=retrieve_vitals and self._health is not None,
            ),
        )

        if isinstance(self._state, AwaitingVitals):
            if not await self._resolve_vitals(generation):
                return None

        current = self._state
        if not isinstance(current, Assessing):
            raise InvalidTransition(current, ProceedToAssessment())

        outcome = await self._run_assessment(generation, symptoms, current.vitals, demographics)
        if outcome is None:
            return None

        if isinstance(outcome, Complete) and self._sink is not None:
            task = asyncio.create_task(self._persist(outcome.result, patient_id))
            self._pending_saves.add(task)
            task.add_done_callback(self._pending_saves.discard)
        return outcome

    async def _resolve_vitals(self, generation: int) -> bool:
        health = self._health
        while isinstance(self._state, AwaitingVitals):
            try:
                snapshot = await health.get_latest_vitals()
            except (HealthPermissionError, PermissionError) as exc:
                event: WorkflowEvent = VitalsRetrievalFailed(
                    reason=str(exc) or "permission missing",
                    permission_missing=True,
                )
            except Exception as exc:
                print(f"[biotriage] vitals_unavailable: {type(exc).__name__}: {exc}")
                event = VitalsRetrievalFailed(reason=f"{type(exc).__name__}: {exc}")
            else:
                event = VitalsRetrieved(snapshot=snapshot)
            if not self._apply(generation, event):
                return False

            if not isinstance(self._state, AwaitingPermission):
                continue

            try:
                granted = bool(await health.request_permission())
                event = PermissionResolved(granted=granted, reason="" if granted else "denied")
            except Exception as exc:
                print(f"[biotriage] permission_request_failed: {type(exc).__name__}: {exc}")
                event = PermissionResolved(granted=False, reason=f"{type(exc).__name__}: {exc}")
            if not self._apply(generation, event):
                return False
            if isinstance(self._state, PermissionGranted):
                self._apply(generation, RetryVitals())

        if isinstance(self._state, VitalsUnavailable):
            print(f"[biotriage] assessing_without_vitals: {self._state.reason}")
        elif isinstance(self._state, PermissionDenied):
            print(f"[biotriage] assessing_without_vitals: permission {self._state.reason}")
        return self._apply(generation, ProceedToAssessment())

    async def _run_assessment(
        self,
        generation: int,
        symptoms: str,
        vitals: VitalsSnapshot | None,
        demographics: dict[str, Any] | None,
    ) -> OrchestrationState | None:
        try:
            verdict = await self._client.assess(symptoms, vitals, demographics)
        except AssessmentFailure as exc:
            print(f"[biotriage] assessment_failed: kind={exc.kind} {exc.message}")
            event: WorkflowEvent = AssessmentFailed(error_kind=exc.kind, message=exc.message)
        except Exception as exc:
            print(f"[biotriage] assessment_failed: kind=unexpected_error {type(exc).__name__}: {exc}")
            event = AssessmentFailed(error_kind="unexpected_error", message=f"{type(exc).__name__}: {exc}")
        else:
            event = AssessmentSucceeded(result=fuse(verdict, vitals, model_version=self._client.model_version))

        if not self._apply(generation, event):
            return None
        return self._state

    async def _persist(self, result: TriageResult, patient_id: str | None) -> None:
        try:
            await self._sink.save(result, patient_id=patient_id, vitals=result.vitals)
        except Exception as exc:
            print(f"[biotriage] result_persist_failed: {result.assessment_id}: {type(exc).__name__}: {exc}")

    async def drain_persistence(self, timeout: float | None = None) -> bool:
        """Wait for scheduled result saves. False if any is still running after `timeout`."""
        if not self._pending_saves:
            return True
        _, pending = await asyncio.wait(set(self._pending_saves), timeout=timeout)
        if pending:
            print(f"[biotriage] result_persist_pending: {len(pending)} save(s) still running")
        return not pending

    async def health_status(self) -> dict[str, bool]:
        status = {"assessment_provider": False, "health_permissions": False}
        try:
            status["assessment_provider"] = await self._client.health_check()
        except Exception as exc:
            print(f"[biotriage] provider_health_check_failed: {type(exc).__name__}: {exc}")
        if self._health is not None:
            try:
                status["health_permissions"] = bool(await self._health.has_permission())
            except Exception as exc:
                print(f"[biotriage] health_permission_check_failed: {type(exc).__name__}: {exc}")
        return status
