"""End-to-end extraction runs with the hashing embeddings and the lexical code strategy."""
from __future__ import annotations

import asyncio
from dataclasses import replace

import httpx
import pytest

from thematica.agents.batch import extract_themes_in_batches
from thematica.agents.orchestrator import ThemeExtractionOrchestrator
from thematica.errors import (
    ConfigurationError,
    ExtractionCancelledError,
)
from thematica.models.events import WORK_STAGES, ProgressEvent, ProgressEventType
from thematica.models.themes import SourceContent
from thematica.research_core.coding.engine import CodeExtractionEngine
from thematica.research_core.coding.lexical import LexicalCodeStrategy
from thematica.services.embeddings import EmbeddingCache, HashingEmbeddingService
from thematica.services.progress import ProgressHub, ProgressReporter
from thematica.services.rate_limiter import CircuitBreaker, CircuitState, ProviderGuard, RateLimiter

SENTENCES = [
    "Remote work gives employees flexible schedules and more autonomy over daily tasks",
    "Managers worry that remote work weakens team collaboration and informal communication",
    "Employees report better work life balance when long commuting time disappears",
    "Video meetings cause fatigue and reduce spontaneous creative discussion among colleagues",
    "Trust between managers and employees shapes productivity in distributed teams",
    "Home office equipment and stable internet access remain unequal across workers",
    "Social isolation affects mental health for many remote employees over time",
    "Hybrid schedules combine office collaboration with flexible home focus time",
    "Performance evaluation changes when managers cannot observe daily work directly",
    "Onboarding new employees remotely requires structured mentoring and clear documentation",
]

OPEN_THRESHOLDS = {"min_coherence": 0.0, "min_distinctiveness": 0.0}


def _corpus(n: int = 10) -> list[SourceContent]:
    sources = []
    for i in range(n):
        picked = [SENTENCES[(i + k) % len(SENTENCES)] for k in (0, 1, 3, 5)]
        sources.append(
            SourceContent(
                id=f"src-{i:02d}",
                title=f"Remote work study {i}",
                content=". ".join(picked) + ".",
                year=2020 + i % 4,
            )
        )
    return sources


class _FailingStrategy(LexicalCodeStrategy):
    def __init__(self, failing_ids: set[str]):
        self.failing_ids = failing_ids

    async def extract(self, source, target):
        if source.id in self.failing_ids:
            raise RuntimeError(f"could not parse {source.id}")
        return await super().extract(source, target)


def _orchestrator(strategy=None, *, cache: EmbeddingCache | None = None, guard=None, **kwargs):
    return ThemeExtractionOrchestrator(
        embeddings=HashingEmbeddingService(256, cache=cache or EmbeddingCache(), guard=guard),
        coding=CodeExtractionEngine(strategy or LexicalCodeStrategy()),
        **kwargs,
    )


class TestInputValidation:
    @pytest.mark.asyncio
    async def test_empty_sources_rejected(self):
        with pytest.raises(ConfigurationError, match="At least one source"):
            await _orchestrator().extract([], "qualitative_analysis")

    @pytest.mark.asyncio
    async def test_unknown_purpose_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown research purpose"):
            await _orchestrator().extract(_corpus(2), "astrology")

    @pytest.mark.asyncio
    async def test_duplicate_source_ids_rejected(self):
        sources = _corpus(2)
        with pytest.raises(ConfigurationError, match="Duplicate source id"):
            await _orchestrator().extract([sources[0], sources[0]], "qualitative_analysis")

    @pytest.mark.asyncio
    async def test_blank_content_rejected(self):
        blank = SourceContent(id="b", title="Blank", content="  ")
        with pytest.raises(ConfigurationError, match="empty content"):
            await _orchestrator().extract([blank], "qualitative_analysis")

    @pytest.mark.asyncio
    async def test_unknown_content_type_rejected(self):
        loaded = SourceContent.from_dict({"id": "s1", "content": "Remote work", "content_type": "Abstract"})
        with pytest.raises(ConfigurationError, match="unknown content type 'Abstract'"):
            await _orchestrator().extract([loaded], "qualitative_analysis")

    @pytest.mark.asyncio
    async def test_lenient_mode_uses_default_profile(self):
        result = await _orchestrator(strict_purpose=False).extract(_corpus(3), "astrology")
        assert result.purpose == "default"


class TestExtraction:
    @pytest.mark.asyncio
    async def test_run_reports_every_stage_in_order(self):
        events: list[ProgressEvent] = []
        sources = _corpus()
        result = await _orchestrator(sink=events.append).extract(sources, "qualitative_analysis")

        started = [e.stage for e in events if e.event is ProgressEventType.STAGE_STARTED]
        assert started == list(WORK_STAGES)
        assert events[-1].event is ProgressEventType.RUN_COMPLETE
        reads = [
            e for e in events
            if e.event is ProgressEventType.ITEM_PROGRESS and e.stage.value == "familiarization"
        ]
        assert len(reads) == len(sources)
        assert events[-1].live_stats["sources_analyzed"] == len(sources)

        stats = result.stats
        assert stats.total_sources == 10
        assert stats.successful_sources == 10
        assert stats.failed_sources == 0
        assert stats.codes_generated > 0
        assert stats.codes_clustered == stats.codes_generated - stats.codes_skipped_no_embedding
        assert stats.final_themes == len(result.themes)
        assert set(stats.stage_ms) == {s.value for s in WORK_STAGES}
        assert result.partial is False

    @pytest.mark.asyncio
    async def test_repeated_runs_do_not_accumulate_in_the_hub(self):
        hub = ProgressHub()
        orchestrator = _orchestrator(sink=hub.publish)
        for _ in range(5):
            await orchestrator.extract(_corpus(3), "qualitative_analysis")
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(ExtractionCancelledError):
            await orchestrator.extract(_corpus(3), "qualitative_analysis", cancel_event=cancel)

        assert len(hub) == 0

    @pytest.mark.asyncio
    async def test_themes_carry_valid_provenance(self):
        sources = _corpus()
        result = await _orchestrator().extract(sources, "q_methodology")
        known = {s.id for s in sources}
        total = sum(t.weight for t in result.themes)

        for theme in result.themes:
            assert theme.source_ids
            assert set(theme.source_ids) <= known
            assert theme.support_count >= 1
            assert 0.0 <= theme.validation_score <= 1.0
            assert sum(theme.source_influence.values()) == pytest.approx(1.0)
        if result.themes:
            assert total == pytest.approx(1.0)
        weights = [(-t.weight, t.id) for t in result.themes]
        assert weights == sorted(weights)

    @pytest.mark.asyncio
    async def test_source_failures_are_isolated(self):
        failing = {"src-01", "src-04", "src-07"}
        events: list[ProgressEvent] = []
        orchestrator = _orchestrator(_FailingStrategy(failing), sink=events.append)

        result = await orchestrator.extract(_corpus(), "qualitative_analysis")

        assert result.stats.failed_sources == 3
        assert result.stats.successful_sources == 7
        assert {f.source_id for f in result.stats.failures} == failing
        assert all(f.stage == "coding" for f in result.stats.failures)
        failed_events = [e for e in events if e.event is ProgressEventType.SOURCE_FAILED]
        assert {e.details["source_id"] for e in failed_events} == failing
        for theme in result.themes:
            assert not set(theme.source_ids) & failing

    @pytest.mark.asyncio
    async def test_runs_are_deterministic(self):
        first = await _orchestrator().extract(_corpus(), "qualitative_analysis")
        second = await _orchestrator().extract(_corpus(), "qualitative_analysis")
        assert [t.to_dict() for t in first.themes] == [t.to_dict() for t in second.themes]
        assert first.stats.candidate_themes == second.stats.candidate_themes

    @pytest.mark.asyncio
    async def test_batching_does_not_change_conservation(self):
        result = await _orchestrator().extract(_corpus(), "qualitative_analysis", batch_size=3, concurrency=2)
        stats = result.stats
        assert stats.batch_count == 4
        assert [b.batch_index for b in stats.batches] == [0, 1, 2, 3]
        assert sum(b.sources_processed for b in stats.batches) == 10
        assert stats.concurrency == 2

    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self):
        orchestrator = _orchestrator()
        first = await orchestrator.extract(_corpus(), "qualitative_analysis")
        second = await orchestrator.extract(_corpus(), "qualitative_analysis")

        assert first.stats.cache_misses > 0
        assert first.stats.provider_calls > 0
        assert second.stats.cache_misses == 0
        assert second.stats.provider_calls == 0
        assert second.stats.cache_hit_rate == 1.0

    @pytest.mark.asyncio
    async def test_tiny_single_source_does_not_crash(self):
        tiny = SourceContent(
            id="tiny",
            title="Short note",
            content="Remote employees value flexible schedules. Managers still worry about team trust and oversight.",
        )
        result = await _orchestrator().extract([tiny], "q_methodology")
        assert result.stats.total_sources == 1
        assert result.saturation is not None
        assert result.saturation.saturation_reached is False
        assert any("input_capped" in note for note in result.stats.notes)

    @pytest.mark.asyncio
    async def test_purpose_changes_theme_granularity(self):
        q_result = await _orchestrator().extract(_corpus(), "q_methodology")
        survey_result = await _orchestrator().extract(_corpus(), "survey_construction")

        assert q_result.stats.candidate_themes > survey_result.stats.candidate_themes
        assert survey_result.stats.candidate_themes <= 15
        assert q_result.stats.candidate_themes >= 30
        assert q_result.validation.adjustments == ["breadth"]
        assert q_result.validation.thresholds["min_sources"] == 1.0
        assert survey_result.validation.thresholds["min_sources"] == 3.0
        for theme in survey_result.themes:
            assert theme.support_count >= 3

    @pytest.mark.asyncio
    async def test_batch_entry_point(self):
        result = await extract_themes_in_batches(
            _corpus(4), "literature_synthesis", 2, orchestrator=_orchestrator()
        )
        assert result.purpose == "literature_synthesis"
        assert result.stats.total_sources == 4


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_run_raises_and_reports_failure(self):
        events: list[ProgressEvent] = []
        cancel = asyncio.Event()
        cancel.set()
        reporter = ProgressReporter("run-cancel", sink=events.append)

        with pytest.raises(ExtractionCancelledError):
            await _orchestrator().extract(
                _corpus(), "qualitative_analysis", reporter=reporter, cancel_event=cancel
            )
        assert events[-1].event is ProgressEventType.RUN_FAILED

    @pytest.mark.asyncio
    async def test_best_effort_returns_partial_result(self):
        cancel = asyncio.Event()
        cancel.set()
        result = await _orchestrator().extract(
            _corpus(), "qualitative_analysis", cancel_event=cancel, best_effort=True
        )
        assert result.partial is True
        assert result.themes == []
        assert any("cancelled" in note for note in result.stats.notes)


class _RejectingEmbeddings(HashingEmbeddingService):
    """Answers 400 for any batch that mentions POISON."""

    async def _embed_batch(self, texts):
        if any("POISON" in t for t in texts):
            request = httpx.Request("POST", "https://embeddings.test/v1/embeddings")
            raise httpx.HTTPStatusError(
                "400 Bad Request", request=request, response=httpx.Response(400, request=request)
            )
        return await super()._embed_batch(texts)


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_rejected_sources_fail_alone(self):
        breaker = CircuitBreaker("embeddings", failure_threshold=5)
        guard = ProviderGuard("embeddings", breaker, RateLimiter(1000, 1.0))
        poisoned = {"src-02", "src-06"}
        sources = [
            replace(s, title=f"POISON {s.title}") if s.id in poisoned else s for s in _corpus()
        ]
        orchestrator = ThemeExtractionOrchestrator(
            embeddings=_RejectingEmbeddings(256, guard=guard, retry_max=3, backoff_seconds=0),
            coding=CodeExtractionEngine(LexicalCodeStrategy()),
        )

        result = await orchestrator.extract(sources, "q_methodology", overrides=OPEN_THRESHOLDS)

        assert breaker.state is CircuitState.CLOSED
        assert result.stats.failed_sources == 2
        assert result.stats.successful_sources == 8
        assert {f.source_id for f in result.stats.failures} == poisoned
        assert {f.stage for f in result.stats.failures} == {"familiarization"}
        assert {f.error_type for f in result.stats.failures} == {"ProviderCallError"}
        assert result.themes
        for theme in result.themes:
            assert not set(theme.source_ids) & poisoned

    @pytest.mark.asyncio
    async def test_open_circuit_is_recorded_per_source(self):
        breaker = CircuitBreaker("embeddings", failure_threshold=1, cooldown_seconds=300)
        breaker.record_failure()
        guard = ProviderGuard("embeddings", breaker, RateLimiter(10, 1.0))
        events: list[ProgressEvent] = []

        result = await _orchestrator(guard=guard, sink=events.append).extract(_corpus(3), "qualitative_analysis")

        assert events[-1].event is ProgressEventType.RUN_COMPLETE
        assert result.themes == []
        assert result.stats.failed_sources == 3
        assert result.stats.successful_sources == 0
        assert {f.error_type for f in result.stats.failures} == {"ProviderUnavailableError"}
        failed_events = [e for e in events if e.event is ProgressEventType.SOURCE_FAILED]
        assert len(failed_events) == 3


@pytest.mark.asyncio
async def test_best_effort_cancel_keeps_sources_already_read():
    cancel = asyncio.Event()
    read: list[str] = []

    def sink(event: ProgressEvent) -> None:
        if event.event is ProgressEventType.ITEM_PROGRESS and event.stage.value == "familiarization":
            read.append(event.details["source_id"])
            if len(read) == 6:
                cancel.set()

    result = await _orchestrator(sink=sink, max_parallel_sources=1).extract(
        _corpus(), "q_methodology", overrides=OPEN_THRESHOLDS, cancel_event=cancel, best_effort=True
    )

    assert result.partial is True
    assert result.stats.successful_sources == len(read) == 6
    assert any("4 item(s) were not processed" in note for note in result.stats.notes)
    assert result.themes
    for theme in result.themes:
        assert set(theme.source_ids) <= set(read)
