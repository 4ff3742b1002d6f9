"""Tests for the progress state machine, event rendering and the in-process hub."""
import json

import pytest

from thematica.errors import PipelineInvariantError
from thematica.models.events import (
    WORK_STAGES,
    ExtractionStage,
    ProgressEvent,
    ProgressEventType,
)
from thematica.services import streaming
from thematica.services.progress import ProgressHub, ProgressReporter, new_run_id


def _run_all_stages(reporter: ProgressReporter) -> None:
    for stage in WORK_STAGES:
        reporter.begin_stage(stage)
        reporter.complete_stage(stage, duration_ms=1)
    reporter.complete(themes=0)


class TestProgressReporter:
    def test_full_run_emits_ordered_events(self):
        events: list[ProgressEvent] = []
        reporter = ProgressReporter("run-1", sink=events.append)
        _run_all_stages(reporter)

        assert [e.sequence for e in events] == list(range(1, len(events) + 1))
        started = [e.stage for e in events if e.event is ProgressEventType.STAGE_STARTED]
        assert started == list(WORK_STAGES)
        assert events[-1].event is ProgressEventType.RUN_COMPLETE
        assert events[-1].percentage == 100.0
        percentages = [e.percentage for e in events]
        assert percentages == sorted(percentages)
        assert reporter.finished

    def test_skipping_a_stage_is_rejected(self):
        reporter = ProgressReporter("run-1")
        reporter.begin_stage(ExtractionStage.PREPARING)
        reporter.complete_stage(ExtractionStage.PREPARING)
        with pytest.raises(PipelineInvariantError, match="Illegal progress transition"):
            reporter.begin_stage(ExtractionStage.CODING)

    def test_cannot_start_next_stage_before_completing_current(self):
        reporter = ProgressReporter("run-1")
        reporter.begin_stage(ExtractionStage.PREPARING)
        with pytest.raises(PipelineInvariantError):
            reporter.begin_stage(ExtractionStage.FAMILIARIZATION)

    def test_complete_requires_deduplication(self):
        reporter = ProgressReporter("run-1")
        reporter.begin_stage(ExtractionStage.PREPARING)
        with pytest.raises(PipelineInvariantError, match="only complete after deduplication"):
            reporter.complete()

    def test_item_progress_interpolates_within_stage(self):
        events: list[ProgressEvent] = []
        reporter = ProgressReporter("run-1", sink=events.append)
        reporter.begin_stage(ExtractionStage.PREPARING)
        reporter.complete_stage(ExtractionStage.PREPARING)
        reporter.begin_stage(ExtractionStage.FAMILIARIZATION)
        reporter.update_stats(sources_analyzed=1, article_title="Study 1")
        reporter.item(1, 2, "Read Study 1", source_id="s1")

        event = events[-1]
        assert event.event is ProgressEventType.ITEM_PROGRESS
        assert event.percentage == pytest.approx(17.5)
        assert event.details == {"current": 1, "total": 2, "source_id": "s1"}
        assert event.live_stats["sources_analyzed"] == 1
        assert event.live_stats["article_title"] == "Study 1"

    def test_item_outside_a_running_stage_is_rejected(self):
        reporter = ProgressReporter("run-1")
        with pytest.raises(PipelineInvariantError, match="No stage is running"):
            reporter.item(1, 1, "nothing")

    def test_unknown_live_stat_is_rejected(self):
        with pytest.raises(AttributeError):
            ProgressReporter("run-1").update_stats(bogus=1)

    def test_fail_records_stage_and_is_final(self):
        events: list[ProgressEvent] = []
        reporter = ProgressReporter("run-1", sink=events.append)
        reporter.begin_stage(ExtractionStage.PREPARING)
        reporter.fail("boom")
        reporter.fail("again")

        failures = [e for e in events if e.event is ProgressEventType.RUN_FAILED]
        assert len(failures) == 1
        assert failures[0].details == {"error": "boom", "failed_stage": "preparing"}
        assert reporter.stage is ExtractionStage.FAILED

    def test_fail_after_complete_is_ignored(self):
        events: list[ProgressEvent] = []
        reporter = ProgressReporter("run-1", sink=events.append)
        _run_all_stages(reporter)
        reporter.fail("late")
        assert events[-1].event is ProgressEventType.RUN_COMPLETE

    def test_broken_sink_does_not_break_the_run(self):
        def sink(event):
            raise RuntimeError("consumer went away")

        reporter = ProgressReporter("run-1", sink=sink)
        _run_all_stages(reporter)
        assert reporter.finished


class TestEventFormatting:
    def test_sse_format(self):
        event = streaming.stage_started("run-9", ExtractionStage.CODING, percentage=30.0, live_stats={})
        text = event.format()
        assert text.startswith("event: stage_started\ndata: ")
        assert text.endswith("\n\n")
        payload = json.loads(text.split("data: ", 1)[1])
        assert payload["stage"] == "coding"
        assert payload["stage_index"] == 3
        assert payload["total_stages"] == 6
        assert payload["rationale"]

    def test_source_failed_event(self):
        event = streaming.source_failed(
            "run-9", ExtractionStage.CODING, "s3", "timeout", percentage=40.0, live_stats={}
        )
        assert event.event is ProgressEventType.SOURCE_FAILED
        assert event.details == {"source_id": "s3", "error": "timeout"}
        assert not event.is_terminal


class TestProgressHub:
    @pytest.mark.asyncio
    async def test_late_subscriber_gets_full_replay(self):
        hub = ProgressHub()
        run_id = new_run_id()
        _run_all_stages(hub.reporter(run_id))

        received = [event async for event in hub.subscribe(run_id)]

        assert received == hub.history(run_id)
        assert received[-1].event is ProgressEventType.RUN_COMPLETE

    @pytest.mark.asyncio
    async def test_runs_are_isolated(self):
        hub = ProgressHub()
        _run_all_stages(hub.reporter("run-a"))
        hub.reporter("run-b").begin_stage(ExtractionStage.PREPARING)
        assert all(e.run_id == "run-a" for e in hub.history("run-a"))
        assert len(hub.history("run-b")) == 1

    def test_history_is_bounded(self):
        hub = ProgressHub(history_size=3)
        _run_all_stages(hub.reporter("run-a"))
        history = hub.history("run-a")
        assert len(history) == 3
        assert history[-1].event is ProgressEventType.RUN_COMPLETE

    def test_result_registry(self):
        hub = ProgressHub()
        hub.register_run("run-a")
        assert hub.get_run("run-a").status == "running"

        hub.set_result("run-a", {"themes": []})
        assert hub.get_run("run-a").status == "complete"

        hub.set_error("run-b", ValueError("bad input"))
        record = hub.get_run("run-b")
        assert (record.status, record.error, record.error_type) == ("failed", "bad input", "ValueError")

        hub.forget("run-a")
        assert hub.get_run("run-a") is None

    def test_unregistered_run_leaves_nothing_behind(self):
        hub = ProgressHub()
        _run_all_stages(ProgressReporter("sync-run", sink=hub.publish))
        assert hub.history("sync-run") == []
        assert len(hub) == 0

    @pytest.mark.asyncio
    async def test_watched_run_keeps_its_history(self):
        hub = ProgressHub()
        reporter = ProgressReporter("sync-run", sink=hub.publish)
        reporter.begin_stage(ExtractionStage.PREPARING)
        stream = hub.subscribe("sync-run")
        first = await stream.__anext__()
        for stage in WORK_STAGES:
            if stage is not ExtractionStage.PREPARING:
                reporter.begin_stage(stage)
            reporter.complete_stage(stage, duration_ms=1)
        reporter.complete(themes=0)

        rest = [event async for event in stream]
        assert [first, *rest] == hub.history("sync-run")
        assert rest[-1].event is ProgressEventType.RUN_COMPLETE

    def test_finished_runs_are_evicted_oldest_first(self):
        hub = ProgressHub(max_runs=3)
        for i in range(5):
            run_id = f"run-{i}"
            hub.register_run(run_id)
            _run_all_stages(hub.reporter(run_id))
            hub.set_result(run_id, {"themes": []})

        assert len(hub) == 3
        assert hub.get_run("run-0") is None and hub.history("run-1") == []
        assert hub.get_run("run-4").status == "complete"
        assert hub.history("run-2")[-1].event is ProgressEventType.RUN_COMPLETE

    def test_running_runs_are_never_evicted(self):
        hub = ProgressHub(max_runs=1)
        hub.register_run("long")
        hub.reporter("long").begin_stage(ExtractionStage.PREPARING)
        for i in range(3):
            hub.set_result(f"short-{i}", {"themes": []})

        assert hub.get_run("long").status == "running"
        assert len(hub.history("long")) == 1
        assert hub.get_run("short-1") is None
