"""Stage sequencing for one extraction run.

preparing -> familiarization -> coding -> clustering -> validation -> deduplication

Source-level failures, provider errors and an open provider circuit included,
are recorded and the run continues. Configuration errors abort before any
provider is called. Invariant violations abort the run with
PipelineInvariantError.
"""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
from loguru import logger

from thematica.agents.batch import BatchOrchestrator, Skipped, run_bounded
from thematica.errors import (
    ConfigurationError,
    ExtractionCancelledError,
    PipelineInvariantError,
    ProviderError,
    SourceExtractionError,
    ThemeExtractionError,
)
from thematica.models.events import ExtractionStage
from thematica.models.purpose import PurposeProfile, ResearchPurpose, build_profile
from thematica.models.themes import (
    CONTENT_TYPES,
    BatchExtractionStats,
    CandidateTheme,
    ExtractionResult,
    ExtractionStats,
    InitialCode,
    SaturationData,
    SourceContent,
    SourceFailure,
    UnifiedTheme,
    ValidationReport,
)
from thematica.research_core.clustering.service import (
    ClusteringStats,
    ThemeAggregationEngine,
    check_code_conservation,
)
from thematica.research_core.coding.base import CodeTarget
from thematica.research_core.coding.engine import CodeExtractionEngine
from thematica.research_core.dedup.service import DeduplicationEngine
from thematica.research_core.similarity import cosine
from thematica.research_core.validation.service import ThemeValidationEngine, ThemeVerdict
from thematica.services.embeddings import EmbeddingProvider
from thematica.services.logger import log_event
from thematica.services.progress import ProgressReporter, ProgressSink, new_run_id

SOURCE_EMBED_CHARS = 8000
MAX_EXCERPTS = 3
SATURATION_MIN_SOURCES = 5
SATURATION_TAIL = 0.2


@dataclass(slots=True)
class _RunState:
    run_id: str
    profile: PurposeProfile
    sources: list[SourceContent]
    reporter: ProgressReporter
    cancel_event: asyncio.Event | None
    best_effort: bool
    stats: BatchExtractionStats = field(default_factory=BatchExtractionStats)
    source_vectors: dict[str, np.ndarray] = field(default_factory=dict)
    codes_by_batch: dict[int, list[InitialCode]] = field(default_factory=dict)
    failed_ids: set[str] = field(default_factory=set)
    read_ids: set[str] = field(default_factory=set)
    coded_ids: set[str] = field(default_factory=set)
    skipped: int = 0
    pool: int = 1

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class ThemeExtractionOrchestrator:
    def __init__(
        self,
        *,
        embeddings: EmbeddingProvider,
        coding: CodeExtractionEngine,
        aggregation: ThemeAggregationEngine | None = None,
        validation: ThemeValidationEngine | None = None,
        dedup: DeduplicationEngine | None = None,
        batches: BatchOrchestrator | None = None,
        sink: ProgressSink | None = None,
        max_parallel_sources: int = 8,
        abstract_word_limit: int = 300,
        strict_purpose: bool = True,
    ):
        self.embeddings = embeddings
        self.coding = coding
        self.aggregation = aggregation or ThemeAggregationEngine()
        self.validation = validation or ThemeValidationEngine()
        self.dedup = dedup or DeduplicationEngine()
        self.batches = batches or BatchOrchestrator()
        self.sink = sink
        self.max_parallel_sources = max_parallel_sources
        self.abstract_word_limit = abstract_word_limit
        self.strict_purpose = strict_purpose

    @property
    def uses_remote_provider(self) -> bool:
        return self.embeddings.is_remote or self.coding.is_remote

    async def extract(
        self,
        sources: Sequence[SourceContent],
        purpose: ResearchPurpose | str,
        *,
        overrides: dict[str, Any] | None = None,
        run_id: str | None = None,
        reporter: ProgressReporter | None = None,
        cancel_event: asyncio.Event | None = None,
        best_effort: bool = False,
        batch_size: int | None = None,
        concurrency: int | None = None,
    ) -> ExtractionResult:
        run_id = run_id or (reporter.run_id if reporter else new_run_id())
        reporter = reporter or ProgressReporter(run_id, sink=self.sink)
        try:
            profile, source_list = self.preflight(sources, purpose, overrides)
            state = _RunState(
                run_id=run_id,
                profile=profile,
                sources=source_list,
                reporter=reporter,
                cancel_event=cancel_event,
                best_effort=best_effort,
            )
            return await self._run(state, batch_size=batch_size, concurrency=concurrency)
        except PipelineInvariantError as exc:
            logger.exception(f"Run {run_id} aborted on invariant violation: {exc} context={exc.context}")
            reporter.fail(str(exc))
            raise
        except ThemeExtractionError as exc:
            logger.warning(f"Run {run_id} failed: {type(exc).__name__}: {exc}")
            reporter.fail(str(exc))
            raise
        except asyncio.CancelledError:
            reporter.fail("Run task was cancelled")
            raise
        except Exception as exc:
            logger.exception(f"Run {run_id} crashed")
            reporter.fail(str(exc))
            raise

    # --- input validation ---

    def preflight(
        self,
        sources: Sequence[SourceContent],
        purpose: ResearchPurpose | str,
        overrides: dict[str, Any] | None = None,
    ) -> tuple[PurposeProfile, list[SourceContent]]:
        """Reject a bad purpose or malformed sources before any work starts."""
        return build_profile(purpose, overrides, strict=self.strict_purpose), self._validate_sources(sources)

    @staticmethod
    def _validate_sources(sources: Sequence[SourceContent]) -> list[SourceContent]:
        if not sources:
            raise ConfigurationError("At least one source is required")
        seen: set[str] = set()
        for index, source in enumerate(sources):
            if not isinstance(source, SourceContent):
                raise ConfigurationError(f"Source #{index} is not a SourceContent")
            if not source.id or not source.id.strip():
                raise ConfigurationError(f"Source #{index} has an empty id")
            if source.id in seen:
                raise ConfigurationError(f"Duplicate source id: {source.id}")
            if not source.content or not source.content.strip():
                raise ConfigurationError(f"Source {source.id} has empty content")
            if source.content_type is not None and source.content_type not in CONTENT_TYPES:
                raise ConfigurationError(
                    f"Source {source.id} has unknown content type {source.content_type!r}; "
                    f"expected one of: {', '.join(CONTENT_TYPES)}"
                )
            seen.add(source.id)
        return list(sources)

    # --- stages ---

    async def _run(self, state: _RunState, *, batch_size: int | None, concurrency: int | None) -> ExtractionResult:
        started = time.monotonic()
        stats = state.stats
        stats.total_sources = len(state.sources)
        cache_before = (self.embeddings.cache.hits, self.embeddings.cache.misses)
        calls_before = self.embeddings.provider_calls
        log_event(
            "extraction_started",
            "Theme extraction started",
            run_id=state.run_id,
            purpose=state.profile.name,
            sources=len(state.sources),
        )

        batches = await self._timed(state, ExtractionStage.PREPARING, self._prepare, state, batch_size, concurrency)
        await self._timed(state, ExtractionStage.FAMILIARIZATION, self._familiarize, state)
        await self._timed(state, ExtractionStage.CODING, self._code, state, batches)
        candidates = await self._timed(state, ExtractionStage.CLUSTERING, self._cluster, state)
        accepted, report = await self._timed(state, ExtractionStage.VALIDATION, self._validate, state, candidates)
        themes, saturation = await self._timed(
            state, ExtractionStage.DEDUPLICATION, self._deduplicate, state, accepted
        )

        stats.cache_hits = self.embeddings.cache.hits - cache_before[0]
        stats.cache_misses = self.embeddings.cache.misses - cache_before[1]
        stats.provider_calls = self.embeddings.provider_calls - calls_before
        stats.duration_ms = int((time.monotonic() - started) * 1000)
        partial = state.cancelled
        if partial:
            stats.notes.append(f"Run cancelled; {state.skipped} item(s) were not processed")
        if not themes and stats.successful_sources:
            stats.notes.append(
                "No themes survived validation; see validation.recommendations for the failing checks"
            )

        result = ExtractionResult(
            run_id=state.run_id,
            purpose=state.profile.name,
            themes=themes,
            stats=stats,
            validation=report,
            saturation=saturation,
            partial=partial,
        )
        state.reporter.complete(themes=len(themes), failed_sources=stats.failed_sources, partial=partial)
        log_event(
            "extraction_complete",
            "Theme extraction complete",
            run_id=state.run_id,
            themes=len(themes),
            failed_sources=stats.failed_sources,
            duration_ms=stats.duration_ms,
        )
        return result

    async def _timed(self, state: _RunState, stage: ExtractionStage, step, *args):
        self._check_cancel(state)
        state.reporter.begin_stage(stage)
        t0 = time.monotonic()
        result = await step(*args)
        state.stats.stage_ms[stage.value] = int((time.monotonic() - t0) * 1000)
        state.reporter.complete_stage(stage, duration_ms=state.stats.stage_ms[stage.value])
        return result

    def _check_cancel(self, state: _RunState) -> None:
        if state.cancelled and not state.best_effort:
            raise ExtractionCancelledError(f"Run {state.run_id} was cancelled")

    async def _prepare(
        self, state: _RunState, batch_size: int | None, concurrency: int | None
    ) -> list[list[SourceContent]]:
        batches = self.batches.plan(state.sources, batch_size)
        pool = self.batches.concurrency(
            concurrency, remote=self.uses_remote_provider, batch_count=len(batches)
        )
        state.stats.batch_count = len(batches)
        state.stats.concurrency = pool
        state.reporter.update_stats(total_articles=len(state.sources))
        state.pool = pool
        return batches

    async def _familiarize(self, state: _RunState) -> None:
        """Embed every source once; one progress event per source, as each finishes.

        A source whose embedding call fails is recorded as failed and skipped
        by the later stages.
        """
        total = len(state.sources)
        done = 0

        async def read(source: SourceContent) -> None:
            nonlocal done
            failures: dict[int, ProviderError] = {}
            vectors = await self.embeddings.embed_many(
                [f"{source.title}. {source.content}"[:SOURCE_EMBED_CHARS]], failures
            )
            done += 1
            if 0 in failures:
                error = failures[0]
                self._record_failure(
                    state, SourceFailure(source.id, "familiarization", str(error), type(error).__name__)
                )
                state.reporter.item(done, total, f"Could not read {source.title or source.id}", source_id=source.id)
                return
            if vectors[0] is not None:
                state.source_vectors[source.id] = vectors[0]
            live = state.reporter.live
            abstract = source.is_abstract(self.abstract_word_limit)
            state.reporter.update_stats(
                sources_analyzed=live.sources_analyzed + 1,
                current_article=done,
                article_title=source.title,
                total_words_read=live.total_words_read + source.word_count,
                abstracts_read=live.abstracts_read + int(abstract),
                full_text_read=live.full_text_read + int(not abstract),
            )
            state.reporter.item(done, total, f"Read {source.title or source.id}", source_id=source.id)

        outcomes = await run_bounded(
            state.sources, read, concurrency=self.max_parallel_sources, cancel_event=state.cancel_event
        )
        self._raise_unexpected(outcomes)
        skipped = sum(1 for o in outcomes if isinstance(o, Skipped))
        state.skipped += skipped
        state.read_ids = {
            s.id for s, o in zip(state.sources, outcomes)
            if not isinstance(o, Skipped) and s.id not in state.failed_ids
        }

        live = state.reporter.live
        state.stats.total_words_read = live.total_words_read
        state.stats.abstracts_read = live.abstracts_read
        state.stats.full_texts_read = live.full_text_read
        missing = len(state.read_ids) - len(state.source_vectors)
        if missing:
            state.stats.notes.append(f"{missing} source-level embedding(s) unavailable")

    async def _code(self, state: _RunState, batches: list[list[SourceContent]]) -> None:
        target = CodeTarget.for_profile(state.profile)
        total = len(state.read_ids)
        done = 0
        # After a best-effort cancel the stage finishes the items already read.
        gate = None if state.cancelled else state.cancel_event

        async def code_source(source: SourceContent) -> tuple[list[InitialCode], int] | None:
            nonlocal done
            if source.id not in state.read_ids:
                return None
            t0 = time.monotonic()
            try:
                codes = await self.coding.extract_codes(source, target)
            except SourceExtractionError as exc:
                done += 1
                cause = exc.__cause__ if isinstance(exc.__cause__, ProviderError) else exc
                self._record_failure(state, SourceFailure(source.id, exc.stage, str(exc), type(cause).__name__))
                return [], 0

            failures: dict[int, ProviderError] = {}
            vectors = await self.embeddings.embed_many([c.embedding_text for c in codes], failures)
            embedded = [c.with_embedding(v) for c, v in zip(codes, vectors) if v is not None]
            if codes and not embedded and failures:
                done += 1
                error = next(iter(failures.values()))
                self._record_failure(state, SourceFailure(source.id, "coding", str(error), type(error).__name__))
                return [], 0
            skipped = len(codes) - len(embedded)
            state.coded_ids.add(source.id)
            state.stats.codes_generated += len(codes)
            state.stats.codes_skipped_no_embedding += skipped
            state.stats.per_source_ms[source.id] = int((time.monotonic() - t0) * 1000)
            if not embedded:
                state.stats.insufficient_content.append(source.id)
            done += 1
            state.reporter.update_stats(codes_generated=state.stats.codes_generated)
            state.reporter.item(
                done,
                total,
                f"Coded {source.title or source.id}",
                source_id=source.id,
                codes=len(embedded),
            )
            return embedded, skipped

        async def code_batch(item: tuple[int, list[SourceContent]]) -> ExtractionStats:
            index, batch = item
            t0 = time.monotonic()
            batch_stats = ExtractionStats(batch_index=index, source_ids=[s.id for s in batch])
            outcomes = await run_bounded(batch, code_source, concurrency=self.max_parallel_sources, cancel_event=gate)
            self._raise_unexpected(outcomes)
            codes: list[InitialCode] = []
            for source, outcome in zip(batch, outcomes):
                if source.id in state.failed_ids:
                    batch_stats.sources_failed += 1
                    continue
                if outcome is None:
                    continue
                if isinstance(outcome, Skipped):
                    state.skipped += 1
                    continue
                embedded, skipped = outcome
                batch_stats.sources_processed += 1
                batch_stats.codes_generated += len(embedded) + skipped
                batch_stats.codes_skipped_no_embedding += skipped
                codes.extend(embedded)
            batch_stats.duration_ms = int((time.monotonic() - t0) * 1000)
            state.codes_by_batch[index] = codes
            return batch_stats

        outcomes = await self.batches.run_batches(
            batches, code_batch, concurrency=state.pool, cancel_event=gate
        )
        self._raise_unexpected(outcomes)
        for (index, batch), outcome in zip(enumerate(batches), outcomes):
            if isinstance(outcome, Skipped):
                state.skipped += sum(1 for s in batch if s.id in state.read_ids)
                state.stats.batches.append(ExtractionStats(batch_index=index, source_ids=[s.id for s in batch]))
                continue
            state.stats.batches.append(outcome)
        state.stats.batches.sort(key=lambda b: b.batch_index)
        state.stats.successful_sources = len(state.coded_ids)
        state.stats.insufficient_content.sort()
        if state.stats.insufficient_content:
            state.stats.notes.append(
                f"{len(state.stats.insufficient_content)} source(s) had too little content to yield codes"
            )
        logger.info(
            f"Run {state.run_id}: {state.stats.codes_generated} codes from "
            f"{state.stats.successful_sources}/{len(state.sources)} sources"
        )

    async def _cluster(self, state: _RunState) -> list[CandidateTheme]:
        profile = state.profile
        indices = sorted(state.codes_by_batch)
        expected = {c.id for i in indices for c in state.codes_by_batch[i]}
        per_batch_stats = [ClusteringStats() for _ in indices]

        async def cluster_batch(position: int) -> list[CandidateTheme]:
            codes = state.codes_by_batch[indices[position]]
            themes = await asyncio.to_thread(
                self.aggregation.build_themes, codes, profile, per_batch_stats[position]
            )
            state.reporter.item(
                position + 1,
                len(indices),
                f"Clustered batch {indices[position] + 1}",
                batch=indices[position],
                themes=len(themes),
            )
            return themes

        outcomes = await run_bounded(list(range(len(indices))), cluster_batch, concurrency=state.pool)
        self._raise_unexpected(outcomes)
        batch_themes: list[list[CandidateTheme]] = list(outcomes)
        for index, themes in zip(indices, batch_themes):
            for batch_stats in state.stats.batches:
                if batch_stats.batch_index == index:
                    batch_stats.candidate_themes = len(themes)

        merged_stats = ClusteringStats()
        if len(batch_themes) > 1:
            candidates = await asyncio.to_thread(self.aggregation.merge_across_batches, batch_themes, merged_stats)
            candidates = await asyncio.to_thread(self.aggregation.fit_to_target, candidates, profile, merged_stats)
        else:
            candidates = batch_themes[0] if batch_themes else []

        check_code_conservation(candidates, expected, "cross-batch aggregation")
        all_stats = per_batch_stats + [merged_stats]
        state.stats.cluster_merges = sum(s.merges for s in all_stats)
        state.stats.cluster_splits = sum(s.splits for s in all_stats)
        state.stats.cross_batch_merges = merged_stats.cross_batch_merges
        state.stats.codes_clustered = len(expected)
        state.stats.candidate_themes = len(candidates)
        if expected and len(candidates) < profile.min_themes:
            state.stats.notes.append(
                f"input_capped: only {len(expected)} embedded codes for a floor of "
                f"{profile.min_themes} themes; candidate count is {len(candidates)}"
            )
        state.reporter.update_stats(themes_identified=len(candidates))
        return candidates

    async def _validate(
        self, state: _RunState, candidates: list[CandidateTheme]
    ) -> tuple[list[UnifiedTheme], ValidationReport]:
        abstract_only = bool(state.coded_ids) and all(
            s.is_abstract(self.abstract_word_limit) for s in state.sources if s.id in state.coded_ids
        )
        accepted, verdicts, report = await asyncio.to_thread(
            self.validation.validate_all, candidates, state.profile, abstract_only=abstract_only
        )
        state.stats.themes_accepted = len(accepted)
        state.stats.themes_rejected = len(candidates) - len(accepted)
        state.reporter.update_stats(themes_identified=len(accepted))
        by_id = {v.theme_id: v for v in verdicts}
        unified = self._freeze(state, accepted, by_id)
        self._check_provenance(state, unified, "validation")
        return unified, report

    async def _deduplicate(
        self, state: _RunState, themes: list[UnifiedTheme]
    ) -> tuple[list[UnifiedTheme], SaturationData]:
        final = await asyncio.to_thread(self.dedup.deduplicate, themes)
        self._check_provenance(state, final, "deduplication")
        state.stats.duplicates_merged = len(themes) - len(final)
        state.stats.final_themes = len(final)
        state.reporter.update_stats(themes_identified=len(final))
        return final, self._saturation(state, final)

    # --- helpers ---

    def _freeze(
        self, state: _RunState, accepted: list[CandidateTheme], verdicts: dict[str, ThemeVerdict]
    ) -> list[UnifiedTheme]:
        total_codes = sum(len(t.codes) for t in accepted)
        frozen: list[UnifiedTheme] = []
        for theme in accepted:
            codes = sorted(theme.codes, key=lambda c: c.id)
            excerpts = tuple(dict.fromkeys(c.raw_text for c in codes if c.raw_text))[:MAX_EXCERPTS]
            frozen.append(
                UnifiedTheme(
                    id=theme.id,
                    label=theme.label,
                    keywords=tuple(theme.keywords),
                    description=theme.description,
                    source_ids=tuple(sorted(theme.source_ids)),
                    weight=len(theme.codes) / total_codes if total_codes else 0.0,
                    validation_score=verdicts[theme.id].score,
                    code_count=len(theme.codes),
                    coherence=theme.coherence or 0.0,
                    distinctiveness=theme.distinctiveness or 0.0,
                    excerpts=excerpts,
                    source_influence=self._influence(state, theme),
                    centroid=theme.centroid,
                )
            )
        return sorted(frozen, key=lambda t: (-t.weight, t.id))

    @staticmethod
    def _influence(state: _RunState, theme: CandidateTheme) -> dict[str, float]:
        """Per-source share of a theme, from source embeddings when every source has one."""
        source_ids = sorted(theme.source_ids)
        if all(sid in state.source_vectors for sid in source_ids):
            raw = {sid: max(cosine(state.source_vectors[sid], theme.centroid), 0.0) for sid in source_ids}
        else:
            raw = {sid: float(sum(1 for c in theme.codes if c.source_id == sid)) for sid in source_ids}
        total = sum(raw.values())
        if total <= 0:
            return {sid: 1.0 / len(source_ids) for sid in source_ids}
        return {sid: value / total for sid, value in raw.items()}

    @staticmethod
    def _check_provenance(state: _RunState, themes: list[UnifiedTheme], where: str) -> None:
        known = {s.id for s in state.sources}
        for theme in themes:
            if not theme.source_ids or not set(theme.source_ids) <= known:
                raise PipelineInvariantError(
                    f"Theme provenance invalid after {where}",
                    context={"theme_id": theme.id, "source_ids": list(theme.source_ids)},
                )
            if theme.support_count < state.profile.min_sources:
                raise PipelineInvariantError(
                    f"Accepted theme below minimum source support after {where}",
                    context={
                        "theme_id": theme.id,
                        "support": theme.support_count,
                        "min_sources": state.profile.min_sources,
                    },
                )

    @staticmethod
    def _saturation(state: _RunState, themes: list[UnifiedTheme]) -> SaturationData:
        """New-theme discovery per source in input order."""
        order = [s.id for s in state.sources if s.id in state.coded_ids]
        discovered: set[str] = set()
        progression: list[dict[str, Any]] = []
        for position, source_id in enumerate(order, start=1):
            new = {t.id for t in themes if source_id in t.source_ids} - discovered
            discovered |= new
            progression.append(
                {
                    "position": position,
                    "source_id": source_id,
                    "new_themes": len(new),
                    "cumulative_themes": len(discovered),
                }
            )

        data = SaturationData(progression=progression)
        if len(order) < SATURATION_MIN_SOURCES:
            data.recommendation = (
                f"Only {len(order)} source(s) analyzed; at least {SATURATION_MIN_SOURCES} "
                "are needed to judge saturation."
            )
            return data
        tail = max(1, math.ceil(len(order) * SATURATION_TAIL))
        if all(p["new_themes"] == 0 for p in progression[-tail:]):
            data.saturation_reached = True
            contributing = [p["position"] for p in progression if p["new_themes"] > 0]
            data.saturation_point = contributing[-1] if contributing else 0
            data.recommendation = "Saturation reached: later sources added no new themes."
        else:
            data.recommendation = "Themes were still emerging in the last sources; consider adding more sources."
        return data

    def _record_failure(self, state: _RunState, failure: SourceFailure) -> None:
        state.failed_ids.add(failure.source_id)
        state.stats.record_failure(failure)
        state.reporter.source_failed(failure.source_id, failure.error)
        logger.warning(f"Source {failure.source_id} failed during {failure.stage}: {failure.error}")

    @staticmethod
    def _raise_unexpected(outcomes: list[Any]) -> None:
        """Surface the first error a worker raised; expected failures never reach here."""
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
