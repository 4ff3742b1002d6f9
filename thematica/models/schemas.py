from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from thematica.models.themes import ContentType, SourceContent


# --- Requests ---


class SourceIn(BaseModel):
    id: str
    title: str = ""
    content: str
    authors: list[str] = Field(default_factory=list)
    year: int | None = None
    keywords: list[str] = Field(default_factory=list)
    doi: str | None = None
    content_type: ContentType | None = None

    def to_source(self) -> SourceContent:
        return SourceContent(
            id=self.id,
            title=self.title,
            content=self.content,
            authors=tuple(self.authors),
            year=self.year,
            keywords=tuple(self.keywords),
            doi=self.doi,
            content_type=self.content_type,
        )


class PurposeOverrides(BaseModel):
    min_themes: int | None = None
    max_themes: int | None = None
    codes_min: int | None = None
    codes_max: int | None = None
    min_sources: int | None = None
    min_coherence: float | None = None
    min_distinctiveness: float | None = None


class ExtractRequest(BaseModel):
    sources: list[SourceIn]
    # Validated by the engine so unknown values surface as configuration errors.
    purpose: str
    overrides: PurposeOverrides | None = None
    concurrency: int | None = Field(default=None, ge=1)
    embedding_backend: Literal["local", "remote", "hashing"] | None = None
    best_effort: bool = False


# --- Responses ---


class ExtractResponse(BaseModel):
    run_id: str
    purpose: str
    themes: list[dict[str, Any]]
    stats: dict[str, Any]
    validation: dict[str, Any] | None = None
    saturation: dict[str, Any] | None = None
    partial: bool = False


class RunStartResponse(BaseModel):
    run_id: str


class RunStatusResponse(BaseModel):
    run_id: str
    status: str
    result: ExtractResponse | None = None
    error: str | None = None
