"""Per-run progress state machine and the in-process channel that carries its events.

Stage order per run:
    preparing -> familiarization -> coding -> clustering -> validation
    -> deduplication -> complete
and ``failed`` from any non-terminal state. Out-of-order transitions raise
PipelineInvariantError.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from loguru import logger

from thematica.errors import ConfigurationError, PipelineInvariantError
from thematica.models.events import (
    STAGE_SPANS,
    WORK_STAGES,
    ExtractionStage,
    LiveStats,
    ProgressEvent,
)
from thematica.services import streaming
from thematica.services.logger import log_pipeline_stage

ProgressSink = Callable[[ProgressEvent], Any]


def new_run_id() -> str:
    return uuid.uuid4().hex


class ProgressReporter:
    def __init__(self, run_id: str, sink: ProgressSink | None = None):
        self.run_id = run_id
        self.live = LiveStats()
        self._sink = sink
        self._stage: ExtractionStage | None = None
        self._stage_done = False
        self._sequence = 0
        self._percentage = 0.0

    @property
    def stage(self) -> ExtractionStage | None:
        return self._stage

    @property
    def finished(self) -> bool:
        return self._stage in (ExtractionStage.COMPLETE, ExtractionStage.FAILED)

    @property
    def percentage(self) -> float:
        return self._percentage

    def update_stats(self, **values: Any) -> None:
        for key, value in values.items():
            if not hasattr(self.live, key):
                raise AttributeError(f"Unknown live stat: {key}")
            setattr(self.live, key, value)

    def begin_stage(self, stage: ExtractionStage, **details: Any) -> None:
        expected = self._next_stage()
        if stage is not expected:
            raise PipelineInvariantError(
                f"Illegal progress transition to {stage.value}",
                context={
                    "run_id": self.run_id,
                    "current": self._stage.value if self._stage else None,
                    "expected": expected.value if expected else None,
                },
            )
        self._stage = stage
        self._stage_done = False
        self._percentage = STAGE_SPANS[stage][0]
        log_pipeline_stage(self.run_id, stage.value, "started", details or None)
        self._emit(
            streaming.stage_started(
                self.run_id, stage, percentage=self._percentage, live_stats=self.live.snapshot(), **details
            )
        )

    def complete_stage(self, stage: ExtractionStage, **details: Any) -> None:
        if stage is not self._stage or self._stage_done:
            raise PipelineInvariantError(
                f"Cannot complete stage {stage.value}",
                context={"run_id": self.run_id, "current": self._stage.value if self._stage else None},
            )
        self._stage_done = True
        self._percentage = STAGE_SPANS[stage][1]
        log_pipeline_stage(self.run_id, stage.value, "completed", details or None)
        self._emit(
            streaming.stage_completed(
                self.run_id, stage, percentage=self._percentage, live_stats=self.live.snapshot(), **details
            )
        )

    def item(self, current: int, total: int, message: str, **details: Any) -> None:
        """One event per processed item, interpolated inside the current stage's span."""
        stage = self._require_active()
        start, end = STAGE_SPANS[stage]
        fraction = min(max(current / total, 0.0), 1.0) if total > 0 else 1.0
        self._percentage = start + (end - start) * fraction
        self._emit(
            streaming.item_progress(
                self.run_id,
                stage,
                percentage=self._percentage,
                live_stats=self.live.snapshot(),
                message=message,
                current=current,
                total=total,
                **details,
            )
        )

    def source_failed(self, source_id: str, error: str) -> None:
        stage = self._require_active()
        self._emit(
            streaming.source_failed(
                self.run_id,
                stage,
                source_id,
                error,
                percentage=self._percentage,
                live_stats=self.live.snapshot(),
            )
        )

    def complete(self, **summary: Any) -> None:
        if self._stage is not ExtractionStage.DEDUPLICATION or not self._stage_done:
            raise PipelineInvariantError(
                "Run can only complete after deduplication",
                context={"run_id": self.run_id, "current": self._stage.value if self._stage else None},
            )
        self._stage = ExtractionStage.COMPLETE
        self._percentage = 100.0
        log_pipeline_stage(self.run_id, "complete", "completed", summary or None)
        self._emit(streaming.run_complete(self.run_id, live_stats=self.live.snapshot(), **summary))

    def fail(self, error: str) -> None:
        if self.finished:
            return
        failed_stage = self._stage
        self._stage = ExtractionStage.FAILED
        log_pipeline_stage(
            self.run_id, "failed", "failed", {"error": error, "stage": failed_stage.value if failed_stage else None}
        )
        self._emit(
            streaming.run_failed(
                self.run_id, error, failed_stage=failed_stage, live_stats=self.live.snapshot()
            )
        )

    def _next_stage(self) -> ExtractionStage | None:
        if self._stage is None:
            return WORK_STAGES[0]
        if self._stage not in WORK_STAGES or not self._stage_done:
            return None
        idx = WORK_STAGES.index(self._stage)
        return WORK_STAGES[idx + 1] if idx + 1 < len(WORK_STAGES) else None

    def _require_active(self) -> ExtractionStage:
        if self._stage is None or self._stage not in WORK_STAGES or self._stage_done:
            raise PipelineInvariantError(
                "No stage is running",
                context={"run_id": self.run_id, "current": self._stage.value if self._stage else None},
            )
        return self._stage

    def _emit(self, event: ProgressEvent) -> None:
        self._sequence += 1
        event.sequence = self._sequence
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception:
            # Progress delivery must never cost the run its result.
            logger.exception(f"Progress sink failed for run {self.run_id}; event dropped")


@dataclass
class RunRecord:
    run_id: str
    status: str = "running"
    result: Any = None
    error: str | None = None
    error_type: str | None = None


class ProgressHub:
    """In-process progress channel keyed by run id, plus the fallback result registry.

    History is kept only for runs someone can come back for: runs started with
    ``register_run`` or ``reporter`` and runs with a live subscriber. Events of
    any other run are dropped once it ends. At most ``max_runs`` finished runs
    are retained; the oldest is forgotten first.
    """

    def __init__(self, history_size: int = 500, max_runs: int = 200):
        if max_runs < 1:
            raise ConfigurationError("progress hub must retain at least one run")
        self.history_size = history_size
        self.max_runs = max_runs
        self._history: dict[str, deque[ProgressEvent]] = {}
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = {}
        self._runs: dict[str, RunRecord] = {}
        self._retained: set[str] = set()
        self._finished: OrderedDict[str, None] = OrderedDict()

    def reporter(self, run_id: str) -> ProgressReporter:
        self._retained.add(run_id)
        return ProgressReporter(run_id, sink=self.publish)

    def publish(self, event: ProgressEvent) -> None:
        try:
            history = self._history.setdefault(event.run_id, deque(maxlen=self.history_size))
            history.append(event)
            for queue in list(self._subscribers.get(event.run_id, ())):
                queue.put_nowait(event)
            if event.is_terminal:
                self._finish(event.run_id)
        except Exception:
            logger.exception(f"Dropping progress event for run {event.run_id}")

    def _finish(self, run_id: str) -> None:
        if run_id not in self._retained and not self._subscribers.get(run_id):
            self._history.pop(run_id, None)
            return
        self._finished[run_id] = None
        self._finished.move_to_end(run_id)
        while len(self._finished) > self.max_runs:
            oldest, _ = self._finished.popitem(last=False)
            self.forget(oldest)

    async def subscribe(self, run_id: str) -> AsyncIterator[ProgressEvent]:
        """Replay buffered history, then follow live events until a terminal one."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        backlog = list(self._history.get(run_id, ()))
        self._subscribers.setdefault(run_id, set()).add(queue)
        try:
            for event in backlog:
                yield event
                if event.is_terminal:
                    return
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            subscribers = self._subscribers.get(run_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[run_id]

    def history(self, run_id: str) -> list[ProgressEvent]:
        return list(self._history.get(run_id, ()))

    def __len__(self) -> int:
        return len(self._history.keys() | self._runs.keys())

    # --- result registry (fallback path when no one is subscribed) ---

    def register_run(self, run_id: str) -> RunRecord:
        record = RunRecord(run_id=run_id)
        self._runs[run_id] = record
        self._retained.add(run_id)
        return record

    def get_run(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    def set_result(self, run_id: str, result: Any) -> None:
        record = self._runs.setdefault(run_id, RunRecord(run_id=run_id))
        record.status = "complete"
        record.result = result
        self._retained.add(run_id)
        self._finish(run_id)

    def set_error(self, run_id: str, error: BaseException) -> None:
        record = self._runs.setdefault(run_id, RunRecord(run_id=run_id))
        record.status = "failed"
        record.error = str(error)
        record.error_type = type(error).__name__
        self._retained.add(run_id)
        self._finish(run_id)

    def forget(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
        self._history.pop(run_id, None)
        self._retained.discard(run_id)
        self._finished.pop(run_id, None)
