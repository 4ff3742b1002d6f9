from __future__ import annotations

import asyncio
import json as _json

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from thematica.errors import (
    ConfigurationError,
    PipelineInvariantError,
    ProviderUnavailableError,
    ThemeExtractionError,
)
from thematica.models.schemas import (
    ExtractRequest,
    ExtractResponse,
    RunStartResponse,
    RunStatusResponse,
)
from thematica.models.themes import ExtractionResult
from thematica.services import logger as log_service
from thematica.services.engine import get_engine
from thematica.services.progress import new_run_id

router = APIRouter(prefix="/api/themes", tags=["themes"])

# Strong references so background runs are not garbage collected mid-flight.
_background_runs: set[asyncio.Task] = set()


def _http_error(exc: ThemeExtractionError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ProviderUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, PipelineInvariantError):
        return HTTPException(status_code=500, detail=f"Internal consistency error: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


def _to_response(result: ExtractionResult) -> ExtractResponse:
    return ExtractResponse(**result.to_dict())


def _overrides(request: ExtractRequest) -> dict | None:
    if request.overrides is None:
        return None
    return request.overrides.model_dump(exclude_none=True)


@router.post("/extract", response_model=ExtractResponse)
async def extract_themes(request: ExtractRequest):
    """Synchronous extraction: waits for the run and returns themes with stats."""
    engine = get_engine()
    try:
        orchestrator = engine.orchestrator(embedding_backend=request.embedding_backend)
        result = await orchestrator.extract(
            [s.to_source() for s in request.sources],
            request.purpose,
            overrides=_overrides(request),
            concurrency=request.concurrency,
            best_effort=request.best_effort,
        )
    except ThemeExtractionError as exc:
        raise _http_error(exc) from exc
    return _to_response(result)


@router.post("/runs", response_model=RunStartResponse)
async def start_run(request: ExtractRequest):
    """Start a background run. Progress streams from /runs/{run_id}/stream."""
    engine = get_engine()
    sources = [s.to_source() for s in request.sources]
    overrides = _overrides(request)
    try:
        orchestrator = engine.orchestrator(embedding_backend=request.embedding_backend)
        orchestrator.preflight(sources, request.purpose, overrides)
    except ThemeExtractionError as exc:
        raise _http_error(exc) from exc

    run_id = new_run_id()
    engine.hub.register_run(run_id)

    async def run() -> None:
        try:
            result = await orchestrator.extract(
                sources,
                request.purpose,
                overrides=overrides,
                run_id=run_id,
                concurrency=request.concurrency,
                best_effort=request.best_effort,
            )
        except ThemeExtractionError as exc:
            engine.hub.set_error(run_id, exc)
            return
        except Exception as exc:
            logger.exception(f"Background run {run_id} crashed")
            engine.hub.set_error(run_id, exc)
            return
        engine.hub.set_result(run_id, result)

    task = asyncio.create_task(run())
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)

    log_service.log_event(
        event_type="run_started",
        message="Background theme extraction started",
        run_id=run_id,
        purpose=request.purpose,
        sources=len(sources),
    )
    return RunStartResponse(run_id=run_id)


@router.get("/runs/{run_id}/stream")
async def stream_run(run_id: str):
    """SSE endpoint that streams progress events for one run."""
    hub = get_engine().hub
    if hub.get_run(run_id) is None and not hub.history(run_id):
        raise HTTPException(status_code=404, detail="Run not found")

    async def event_generator():
        async for event in hub.subscribe(run_id):
            yield {
                "event": event.event.value,
                "data": _json.dumps(event.to_dict()),
            }

    return EventSourceResponse(event_generator())


@router.get("/runs/{run_id}", response_model=RunStatusResponse)
async def get_run(run_id: str):
    """Fallback result retrieval for callers without a progress stream."""
    record = get_engine().hub.get_run(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if record.status == "running":
        return JSONResponse(
            status_code=202,
            content=RunStatusResponse(run_id=run_id, status="running").model_dump(),
        )
    if record.status == "failed":
        return JSONResponse(
            status_code=500,
            content=RunStatusResponse(
                run_id=run_id, status="failed", error=f"{record.error_type}: {record.error}"
            ).model_dump(),
        )
    return RunStatusResponse(run_id=run_id, status="complete", result=_to_response(record.result))
