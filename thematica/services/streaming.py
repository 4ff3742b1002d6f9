from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from thematica.models.events import (
    STAGE_DESCRIPTIONS,
    WORK_STAGES,
    ExtractionStage,
    ProgressEvent,
    ProgressEventType,
    stage_index,
)


def _event(
    event_type: ProgressEventType,
    run_id: str,
    stage: ExtractionStage,
    *,
    percentage: float,
    live_stats: dict[str, Any],
    message: str | None = None,
    rationale: str | None = None,
    details: dict[str, Any] | None = None,
) -> ProgressEvent:
    what, why = STAGE_DESCRIPTIONS[stage]
    return ProgressEvent(
        event=event_type,
        run_id=run_id,
        stage=stage,
        stage_index=stage_index(stage),
        total_stages=len(WORK_STAGES),
        percentage=percentage,
        message=message or what,
        rationale=why if rationale is None else rationale,
        live_stats=live_stats,
        details=details or {},
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def stage_started(
    run_id: str, stage: ExtractionStage, *, percentage: float, live_stats: dict[str, Any], **details: Any
) -> ProgressEvent:
    """Emit when a pipeline stage begins."""
    return _event(
        ProgressEventType.STAGE_STARTED,
        run_id,
        stage,
        percentage=percentage,
        live_stats=live_stats,
        details=details,
    )


def stage_completed(
    run_id: str, stage: ExtractionStage, *, percentage: float, live_stats: dict[str, Any], **details: Any
) -> ProgressEvent:
    what, _ = STAGE_DESCRIPTIONS[stage]
    return _event(
        ProgressEventType.STAGE_COMPLETED,
        run_id,
        stage,
        percentage=percentage,
        live_stats=live_stats,
        message=f"{what}: done",
        details=details,
    )


def item_progress(
    run_id: str,
    stage: ExtractionStage,
    *,
    percentage: float,
    live_stats: dict[str, Any],
    message: str,
    **details: Any,
) -> ProgressEvent:
    """Emit once per processed item within a stage."""
    return _event(
        ProgressEventType.ITEM_PROGRESS,
        run_id,
        stage,
        percentage=percentage,
        live_stats=live_stats,
        message=message,
        details=details,
    )


def source_failed(
    run_id: str,
    stage: ExtractionStage,
    source_id: str,
    error: str,
    *,
    percentage: float,
    live_stats: dict[str, Any],
) -> ProgressEvent:
    return _event(
        ProgressEventType.SOURCE_FAILED,
        run_id,
        stage,
        percentage=percentage,
        live_stats=live_stats,
        message=f"Source {source_id} skipped",
        rationale="The source failed and is excluded from later stages.",
        details={"source_id": source_id, "error": error},
    )


def run_complete(run_id: str, *, live_stats: dict[str, Any], **summary: Any) -> ProgressEvent:
    return _event(
        ProgressEventType.RUN_COMPLETE,
        run_id,
        ExtractionStage.COMPLETE,
        percentage=100.0,
        live_stats=live_stats,
        details=summary,
    )


def run_failed(
    run_id: str, error: str, *, failed_stage: ExtractionStage | None, live_stats: dict[str, Any]
) -> ProgressEvent:
    return _event(
        ProgressEventType.RUN_FAILED,
        run_id,
        ExtractionStage.FAILED,
        percentage=0.0,
        live_stats=live_stats,
        message=f"Extraction failed: {error}",
        details={
            "error": error,
            "failed_stage": failed_stage.value if failed_stage is not None else None,
        },
    )
