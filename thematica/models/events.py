from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ProgressEventType(str, Enum):
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    ITEM_PROGRESS = "item_progress"
    SOURCE_FAILED = "source_failed"
    RUN_COMPLETE = "run_complete"
    RUN_FAILED = "run_failed"


TERMINAL_EVENTS = frozenset({ProgressEventType.RUN_COMPLETE, ProgressEventType.RUN_FAILED})


class ExtractionStage(str, Enum):
    PREPARING = "preparing"
    FAMILIARIZATION = "familiarization"
    CODING = "coding"
    CLUSTERING = "clustering"
    VALIDATION = "validation"
    DEDUPLICATION = "deduplication"
    COMPLETE = "complete"
    FAILED = "failed"


WORK_STAGES: tuple[ExtractionStage, ...] = (
    ExtractionStage.PREPARING,
    ExtractionStage.FAMILIARIZATION,
    ExtractionStage.CODING,
    ExtractionStage.CLUSTERING,
    ExtractionStage.VALIDATION,
    ExtractionStage.DEDUPLICATION,
)

# Share of the 0-100 progress bar owned by each stage: (start, end).
STAGE_SPANS: dict[ExtractionStage, tuple[float, float]] = {
    ExtractionStage.PREPARING: (0.0, 5.0),
    ExtractionStage.FAMILIARIZATION: (5.0, 30.0),
    ExtractionStage.CODING: (30.0, 60.0),
    ExtractionStage.CLUSTERING: (60.0, 80.0),
    ExtractionStage.VALIDATION: (80.0, 90.0),
    ExtractionStage.DEDUPLICATION: (90.0, 100.0),
    ExtractionStage.COMPLETE: (100.0, 100.0),
    ExtractionStage.FAILED: (0.0, 0.0),
}

STAGE_DESCRIPTIONS: dict[ExtractionStage, tuple[str, str]] = {
    ExtractionStage.PREPARING: (
        "Preparing sources",
        "Checking every source is well-formed before any work starts.",
    ),
    ExtractionStage.FAMILIARIZATION: (
        "Reading and embedding sources",
        "Building a semantic picture of each source before coding it.",
    ),
    ExtractionStage.CODING: (
        "Extracting initial codes",
        "Breaking sources into atomic concepts that themes are built from.",
    ),
    ExtractionStage.CLUSTERING: (
        "Clustering codes into candidate themes",
        "Grouping semantically related codes toward the purpose's theme range.",
    ),
    ExtractionStage.VALIDATION: (
        "Validating candidate themes",
        "Checking coherence, distinctiveness and source support against purpose thresholds.",
    ),
    ExtractionStage.DEDUPLICATION: (
        "Merging duplicate themes",
        "Collapsing near-identical themes so each idea is reported once.",
    ),
    ExtractionStage.COMPLETE: ("Extraction complete", "All stages finished."),
    ExtractionStage.FAILED: ("Extraction failed", "The run stopped before completing."),
}


def stage_index(stage: ExtractionStage) -> int:
    if stage in WORK_STAGES:
        return WORK_STAGES.index(stage) + 1
    if stage is ExtractionStage.COMPLETE:
        return len(WORK_STAGES)
    return 0


@dataclass(slots=True)
class LiveStats:
    sources_analyzed: int = 0
    codes_generated: int = 0
    themes_identified: int = 0
    full_text_read: int = 0
    abstracts_read: int = 0
    total_words_read: int = 0
    current_article: int = 0
    total_articles: int = 0
    article_title: str = ""

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProgressEvent:
    event: ProgressEventType
    run_id: str
    stage: ExtractionStage
    stage_index: int
    total_stages: int
    percentage: float
    message: str
    rationale: str = ""
    live_stats: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "stage_index": self.stage_index,
            "total_stages": self.total_stages,
            "percentage": round(self.percentage, 2),
            "message": self.message,
            "rationale": self.rationale,
            "live_stats": dict(self.live_stats),
            "details": dict(self.details),
            "sequence": self.sequence,
            "timestamp": self.timestamp,
        }

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.to_dict())}\n\n"
