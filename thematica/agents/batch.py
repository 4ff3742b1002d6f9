"""Batch planning and bounded concurrent fan-out for large source sets."""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence, TypeVar

from loguru import logger

from thematica.errors import ConfigurationError
from thematica.models.purpose import ResearchPurpose
from thematica.models.themes import ExtractionResult, SourceContent

if TYPE_CHECKING:
    from thematica.agents.orchestrator import ThemeExtractionOrchestrator

T = TypeVar("T")
R = TypeVar("R")


class Skipped:
    """Marker for an item that was never started because the run was cancelled."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "SKIPPED"


SKIPPED = Skipped()


def split_batches(sources: Sequence[SourceContent], batch_size: int) -> list[list[SourceContent]]:
    if batch_size < 1:
        raise ConfigurationError("batch_size must be at least 1")
    return [list(sources[i : i + batch_size]) for i in range(0, len(sources), batch_size)]


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
    cancel_event: asyncio.Event | None = None,
) -> list[R | BaseException | Skipped]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Results keep input order. Exceptions are returned in place, not raised.
    Once ``cancel_event`` is set, items that have not started yet come back as
    SKIPPED while in-flight items run to completion.
    """
    semaphore = asyncio.Semaphore(max(int(concurrency), 1))

    async def run_one(item: T) -> R | Skipped:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return SKIPPED
            return await worker(item)

    return await asyncio.gather(*(run_one(item) for item in items), return_exceptions=True)


class BatchOrchestrator:
    """Splits sources into batches and sizes the batch pool for the active providers.

    Remote, rate-limited providers get the smaller pool; local providers the
    larger one. Both limits come from configuration.
    """

    def __init__(self, *, batch_size: int = 10, max_parallel_local: int = 6, max_parallel_remote: int = 2):
        if max_parallel_local < 1 or max_parallel_remote < 1:
            raise ConfigurationError("batch concurrency limits must be at least 1")
        self.batch_size = batch_size
        self.max_parallel_local = max_parallel_local
        self.max_parallel_remote = max_parallel_remote

    def plan(self, sources: Sequence[SourceContent], batch_size: int | None = None) -> list[list[SourceContent]]:
        return split_batches(sources, batch_size or self.batch_size)

    def concurrency(self, hint: int | None, *, remote: bool, batch_count: int) -> int:
        ceiling = self.max_parallel_remote if remote else self.max_parallel_local
        if hint is not None:
            if hint < 1:
                raise ConfigurationError("concurrency hint must be at least 1")
            ceiling = min(hint, ceiling) if remote else hint
        return max(1, min(ceiling, max(batch_count, 1)))

    async def run_batches(
        self,
        batches: list[list[SourceContent]],
        worker: Callable[[tuple[int, list[SourceContent]]], Awaitable[R]],
        *,
        concurrency: int,
        cancel_event: asyncio.Event | None = None,
    ) -> list[R | BaseException | Skipped]:
        logger.debug(f"Running {len(batches)} batch(es) with concurrency {concurrency}")
        return await run_bounded(
            list(enumerate(batches)),
            worker,
            concurrency=concurrency,
            cancel_event=cancel_event,
        )


async def extract_themes_in_batches(
    sources: list[SourceContent],
    purpose: ResearchPurpose | str,
    concurrency_hint: int | None = None,
    *,
    orchestrator: "ThemeExtractionOrchestrator | None" = None,
    **options: Any,
) -> ExtractionResult:
    """Batch entry point: plan batches, fan out with bounded concurrency, validate globally."""
    if orchestrator is None:
        from thematica.services.engine import get_engine

        orchestrator = get_engine().orchestrator()
    return await orchestrator.extract(sources, purpose, concurrency=concurrency_hint, **options)
