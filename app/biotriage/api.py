"""HTTP entrypoint for the Bios triage engine.

`create_app` is the composition root: settings, the Gemini provider, the
assessment client and the result store are built once; every request gets its
own orchestrator so per-session state is never shared.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from biotriage.assessment import AssessmentClient
from biotriage.config import Settings, get_settings
from biotriage.gemini import GeminiProvider
from biotriage.health import ReadingsHealthProvider
from biotriage.orchestration import Complete, Failed, OrchestrationState, TriageOrchestrator
from biotriage.schemas import AssessmentRequest
from biotriage.sse import format_sse
from biotriage.storage import ResultStore
from biotriage.utils import utc_now

_FAILURE_STATUS = {
    "safety_blocked": 422,
    "concurrent_assessment": 409,
}


def _parse_request(payload: dict[str, Any]) -> AssessmentRequest:
    try:
        return AssessmentRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc


def create_app(
    settings: Settings | None = None,
    *,
    client: AssessmentClient | None = None,
    store: ResultStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    client = client or AssessmentClient(GeminiProvider(settings), settings)
    store = store or ResultStore(settings)

    def _orchestrator(request: AssessmentRequest) -> TriageOrchestrator:
        health = ReadingsHealthProvider(request.readings) if request.readings else None
        return TriageOrchestrator(client, health, sink=store)

    async def _run(orchestrator: TriageOrchestrator, request: AssessmentRequest) -> OrchestrationState | None:
        return await orchestrator.assess(
            request.symptoms,
            vitals=request.vitals,
            demographics=request.demographics,
            retrieve_vitals=request.retrieve_vitals,
            patient_id=request.patient_id,
        )

    app = FastAPI(title="Bios Triage API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health(probe: bool = False) -> dict[str, Any]:
        provider_ok: bool | None = None
        if probe:
            provider_ok = await client.health_check()
        return {
            "status": "ok",
            "service": settings.app_name,
            "timestamp": utc_now().isoformat(),
            "gemini_model": settings.gemini_model,
            "gemini_key_configured": bool(settings.gemini_api_key),
            "request_timeout_sec": settings.request_timeout_sec,
            "max_retries": settings.max_retries,
            "probe_performed": probe,
            "provider_reachable": provider_ok,
        }

    @app.post("/v1/triage")
    async def triage(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        request = _parse_request(payload)
        orchestrator = _orchestrator(request)
        final = await _run(orchestrator, request)
        if isinstance(final, Complete):
            await orchestrator.drain_persistence(settings.persist_timeout_sec)
            return final.result.to_record()
        if isinstance(final, Failed):
            raise HTTPException(
                status_code=_FAILURE_STATUS.get(final.error_kind, 502),
                detail={"error_kind": final.error_kind, "message": final.message},
            )
        raise HTTPException(status_code=500, detail="assessment abandoned")

    @app.post("/v1/triage/stream")
    async def triage_stream(payload: dict[str, Any] = Body(...)):
        request = _parse_request(payload)
        orchestrator = _orchestrator(request)
        queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        done = asyncio.Event()

        def on_state(state: OrchestrationState) -> None:
            queue.put_nowait((f"state.{state.name}", state.to_payload()))

        orchestrator.subscribe(on_state)

        async def runner() -> None:
            try:
                final = await _run(orchestrator, request)
                if isinstance(final, Complete):
                    queue.put_nowait(("triage.final", final.result.to_record()))
                    await orchestrator.drain_persistence(settings.persist_timeout_sec)
                elif isinstance(final, Failed):
                    queue.put_nowait(("triage.failed", final.to_payload()))
            except Exception as exc:
                queue.put_nowait(("triage.error", {"error": f"{type(exc).__name__}: {exc}"}))
            finally:
                done.set()

        task = asyncio.create_task(runner())

        async def event_gen():
            sequence = 0
            while True:
                if done.is_set() and queue.empty():
                    break
                try:
                    event_name, envelope = await asyncio.wait_for(queue.get(), timeout=0.75)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                sequence += 1
                await store.append_event(event_name, envelope)
                yield format_sse(event_name, envelope, event_id=sequence)
            await task

        return StreamingResponse(event_gen(), media_type="text/event-stream")

    @app.get("/v1/triage/{assessment_id}")
    async def triage_result(assessment_id: str) -> dict[str, Any]:
        try:
            result = store.read_result(assessment_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if result is None:
            raise HTTPException(status_code=404, detail="assessment_id not found")
        return result.to_record()

    @app.get("/v1/patients/{patient_id}/triage")
    async def patient_history(patient_id: str, limit: int | None = Query(None, ge=0)) -> dict[str, Any]:
        try:
            results = store.query_by_patient(patient_id, limit=limit)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"patient_id": patient_id, "results": [r.to_record() for r in results]}

    return app
