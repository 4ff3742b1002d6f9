from __future__ import annotations

from loguru import logger

from thematica.errors import PipelineInvariantError, SourceExtractionError
from thematica.models.themes import InitialCode, SourceContent
from thematica.research_core.coding.base import CodeExtractionStrategy, CodeTarget


class CodeExtractionEngine:
    """Runs the configured strategy for one source and normalizes what comes back.

    Any failure for a single source, an open provider circuit included,
    surfaces as SourceExtractionError chained to its cause so the caller can
    record it and move on.
    """

    def __init__(self, strategy: CodeExtractionStrategy):
        self.strategy = strategy

    @property
    def is_remote(self) -> bool:
        return self.strategy.is_remote

    async def extract_codes(self, source: SourceContent, target: CodeTarget) -> list[InitialCode]:
        if not source.content.strip():
            raise SourceExtractionError(
                f"Source {source.id} has no content", source_id=source.id, stage="coding"
            )
        try:
            codes = await self.strategy.extract(source, target)
        except SourceExtractionError:
            raise
        except Exception as exc:
            raise SourceExtractionError(
                f"{self.strategy.name} extraction failed for {source.id}: {exc}",
                source_id=source.id,
                stage="coding",
            ) from exc

        unique: list[InitialCode] = []
        seen_labels: set[str] = set()
        for code in codes:
            if code.source_id != source.id:
                raise PipelineInvariantError(
                    "Code references a different source than the one it was extracted from",
                    context={"code_id": code.id, "code_source": code.source_id, "source": source.id},
                )
            key = code.label.lower()
            if key in seen_labels:
                continue
            seen_labels.add(key)
            unique.append(code)

        logger.debug(f"{self.strategy.name}: {len(unique)} codes from {source.id}")
        return unique
