"""Data model for one extraction run: sources, codes, themes and run statistics."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Literal

import numpy as np

ContentType = Literal["full_text", "abstract"]
CONTENT_ABSTRACT = "abstract"
CONTENT_TYPES: tuple[str, ...] = ("full_text", CONTENT_ABSTRACT)


@dataclass(frozen=True, slots=True)
class SourceContent:
    id: str
    title: str
    content: str
    authors: tuple[str, ...] = ()
    year: int | None = None
    keywords: tuple[str, ...] = ()
    doi: str | None = None
    content_type: ContentType | None = None

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    def is_abstract(self, word_limit: int) -> bool:
        if self.content_type is not None:
            return self.content_type == CONTENT_ABSTRACT
        return self.word_count < word_limit

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceContent":
        year = data.get("year")
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title") or ""),
            content=str(data.get("content") or ""),
            authors=tuple(data.get("authors") or ()),
            year=int(year) if year not in (None, "") else None,
            keywords=tuple(data.get("keywords") or ()),
            doi=data.get("doi"),
            content_type=data.get("content_type") or data.get("contentType"),
        )


@dataclass(frozen=True, slots=True)
class InitialCode:
    id: str
    label: str
    source_id: str
    raw_text: str
    description: str = ""
    position: int = 0
    embedding: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def embedding_text(self) -> str:
        return f"{self.label}: {self.raw_text}"

    def with_embedding(self, vector: np.ndarray) -> "InitialCode":
        return replace(self, embedding=vector)


def theme_id_for(code_ids: list[str]) -> str:
    digest = hashlib.sha1("|".join(sorted(code_ids)).encode("utf-8")).hexdigest()
    return f"theme_{digest[:16]}"


def mean_vector(vectors: list[np.ndarray]) -> np.ndarray:
    return np.mean(np.vstack(vectors), axis=0)


@dataclass(slots=True)
class CandidateTheme:
    id: str
    label: str
    codes: list[InitialCode]
    centroid: np.ndarray = field(repr=False)
    source_ids: set[str] = field(default_factory=set)
    keywords: list[str] = field(default_factory=list)
    description: str = ""
    coherence: float | None = None
    distinctiveness: float | None = None

    @classmethod
    def from_codes(cls, codes: list[InitialCode], label: str = "") -> "CandidateTheme":
        if not codes:
            raise ValueError("A candidate theme needs at least one code")
        theme = cls(
            id="",
            label=label or codes[0].label,
            codes=list(codes),
            centroid=mean_vector([c.embedding for c in codes]),
        )
        theme.recompute()
        return theme

    @property
    def support_count(self) -> int:
        return len(self.source_ids)

    @property
    def code_ids(self) -> list[str]:
        return [c.id for c in self.codes]

    def recompute(self) -> None:
        """Refresh id, centroid and provenance after the member codes changed."""
        self.codes.sort(key=lambda c: c.id)
        self.id = theme_id_for(self.code_ids)
        self.centroid = mean_vector([c.embedding for c in self.codes])
        self.source_ids = {c.source_id for c in self.codes}
        self.coherence = None
        self.distinctiveness = None

    def absorb(self, other: "CandidateTheme") -> None:
        self.codes.extend(other.codes)
        self.recompute()


@dataclass(frozen=True, slots=True)
class UnifiedTheme:
    id: str
    label: str
    keywords: tuple[str, ...]
    description: str
    source_ids: tuple[str, ...]
    weight: float
    validation_score: float
    code_count: int = 0
    coherence: float = 0.0
    distinctiveness: float = 0.0
    excerpts: tuple[str, ...] = ()
    source_influence: dict[str, float] = field(default_factory=dict)
    centroid: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def support_count(self) -> int:
        return len(self.source_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "keywords": list(self.keywords),
            "description": self.description,
            "source_ids": list(self.source_ids),
            "weight": round(self.weight, 6),
            "validation_score": round(self.validation_score, 6),
            "code_count": self.code_count,
            "coherence": round(self.coherence, 6),
            "distinctiveness": round(self.distinctiveness, 6),
            "support_count": self.support_count,
            "excerpts": list(self.excerpts),
            "source_influence": {k: round(v, 6) for k, v in self.source_influence.items()},
        }


@dataclass(slots=True)
class SourceFailure:
    source_id: str
    stage: str
    error: str
    error_type: str = "SourceExtractionError"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "stage": self.stage,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass(slots=True)
class ExtractionStats:
    """Counters for one batch of sources."""

    batch_index: int
    source_ids: list[str] = field(default_factory=list)
    sources_processed: int = 0
    sources_failed: int = 0
    codes_generated: int = 0
    codes_skipped_no_embedding: int = 0
    candidate_themes: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "source_ids": list(self.source_ids),
            "sources_processed": self.sources_processed,
            "sources_failed": self.sources_failed,
            "codes_generated": self.codes_generated,
            "codes_skipped_no_embedding": self.codes_skipped_no_embedding,
            "candidate_themes": self.candidate_themes,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class BatchExtractionStats:
    """Run-level counters, returned with every result including partial failures."""

    total_sources: int = 0
    successful_sources: int = 0
    failed_sources: int = 0
    failures: list[SourceFailure] = field(default_factory=list)
    full_texts_read: int = 0
    abstracts_read: int = 0
    total_words_read: int = 0
    codes_generated: int = 0
    codes_skipped_no_embedding: int = 0
    codes_clustered: int = 0
    candidate_themes: int = 0
    themes_accepted: int = 0
    themes_rejected: int = 0
    duplicates_merged: int = 0
    final_themes: int = 0
    cluster_merges: int = 0
    cluster_splits: int = 0
    cross_batch_merges: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    provider_calls: int = 0
    batch_count: int = 0
    concurrency: int = 0
    per_source_ms: dict[str, int] = field(default_factory=dict)
    stage_ms: dict[str, int] = field(default_factory=dict)
    batches: list[ExtractionStats] = field(default_factory=list)
    insufficient_content: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        if lookups == 0:
            return 0.0
        return self.cache_hits / lookups

    def record_failure(self, failure: SourceFailure) -> None:
        self.failures.append(failure)
        self.failed_sources = len({f.source_id for f in self.failures})

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sources": self.total_sources,
            "successful_sources": self.successful_sources,
            "failed_sources": self.failed_sources,
            "failures": [f.to_dict() for f in self.failures],
            "full_texts_read": self.full_texts_read,
            "abstracts_read": self.abstracts_read,
            "total_words_read": self.total_words_read,
            "codes_generated": self.codes_generated,
            "codes_skipped_no_embedding": self.codes_skipped_no_embedding,
            "codes_clustered": self.codes_clustered,
            "candidate_themes": self.candidate_themes,
            "themes_accepted": self.themes_accepted,
            "themes_rejected": self.themes_rejected,
            "duplicates_merged": self.duplicates_merged,
            "final_themes": self.final_themes,
            "cluster_merges": self.cluster_merges,
            "cluster_splits": self.cluster_splits,
            "cross_batch_merges": self.cross_batch_merges,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "provider_calls": self.provider_calls,
            "batch_count": self.batch_count,
            "concurrency": self.concurrency,
            "per_source_ms": dict(self.per_source_ms),
            "stage_ms": dict(self.stage_ms),
            "batches": [b.to_dict() for b in self.batches],
            "insufficient_content": list(self.insufficient_content),
            "notes": list(self.notes),
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class ValidationCheck:
    actual: float
    required: float
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {"actual": round(self.actual, 4), "required": round(self.required, 4), "passed": self.passed}


@dataclass(slots=True)
class RejectionDiagnostic:
    theme_id: str
    label: str
    checks: dict[str, ValidationCheck]
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "theme_id": self.theme_id,
            "label": self.label,
            "checks": {k: v.to_dict() for k, v in self.checks.items()},
            "reasons": list(self.reasons),
        }


@dataclass(slots=True)
class ValidationReport:
    purpose: str
    thresholds: dict[str, float]
    adjustments: list[str] = field(default_factory=list)
    total_candidates: int = 0
    accepted: int = 0
    rejected: list[RejectionDiagnostic] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "purpose": self.purpose,
            "thresholds": dict(self.thresholds),
            "adjustments": list(self.adjustments),
            "total_candidates": self.total_candidates,
            "accepted": self.accepted,
            "rejected": [r.to_dict() for r in self.rejected],
            "recommendations": list(self.recommendations),
        }


@dataclass(slots=True)
class SaturationData:
    progression: list[dict[str, Any]] = field(default_factory=list)
    saturation_reached: bool = False
    saturation_point: int | None = None
    recommendation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "progression": [dict(p) for p in self.progression],
            "saturation_reached": self.saturation_reached,
            "saturation_point": self.saturation_point,
            "recommendation": self.recommendation,
        }


@dataclass(slots=True)
class ExtractionResult:
    run_id: str
    purpose: str
    themes: list[UnifiedTheme]
    stats: BatchExtractionStats
    validation: ValidationReport | None = None
    saturation: SaturationData | None = None
    partial: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "purpose": self.purpose,
            "themes": [t.to_dict() for t in self.themes],
            "stats": self.stats.to_dict(),
            "validation": self.validation.to_dict() if self.validation else None,
            "saturation": self.saturation.to_dict() if self.saturation else None,
            "partial": self.partial,
        }
