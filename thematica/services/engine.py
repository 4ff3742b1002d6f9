"""Process-wide engine resources.

Constructed once per process (``get_engine``) and injected into every
orchestrator it builds: the shared embedding cache, one provider guard per
remote dependency, and the progress hub. Tests build isolated instances with
``EngineResources(settings)`` or drop the singleton with ``reset_engine``.
"""
from __future__ import annotations

from loguru import logger

from thematica.agents.batch import BatchOrchestrator
from thematica.agents.orchestrator import ThemeExtractionOrchestrator
from thematica.config import Settings, settings as default_settings
from thematica.errors import ConfigurationError
from thematica.research_core.clustering.service import ThemeAggregationEngine
from thematica.research_core.coding.base import CodeExtractionStrategy
from thematica.research_core.coding.engine import CodeExtractionEngine
from thematica.research_core.coding.lexical import LexicalCodeStrategy
from thematica.research_core.coding.llm import LLMCodeStrategy
from thematica.research_core.dedup.service import DeduplicationEngine
from thematica.research_core.validation.service import ThemeValidationEngine
from thematica.services import llm_client
from thematica.services.embeddings import EmbeddingCache, EmbeddingProvider, get_embedding_provider
from thematica.services.progress import ProgressHub
from thematica.services.rate_limiter import ProviderGuard, build_provider_guard


class EngineResources:
    def __init__(self, config: Settings | None = None):
        self.settings = config or default_settings
        self.cache = EmbeddingCache(self.settings.embedding_cache_max_entries)
        self.hub = ProgressHub(self.settings.progress_history_size, self.settings.progress_max_runs)
        self._guards: dict[str, ProviderGuard] = {}
        self._providers: dict[str, EmbeddingProvider] = {}

    def guard(self, name: str) -> ProviderGuard:
        if name not in self._guards:
            self._guards[name] = build_provider_guard(name, self.settings)
        return self._guards[name]

    def embedding_provider(self, backend: str | None = None) -> EmbeddingProvider:
        selected = (backend or self.settings.embedding_backend).strip().lower()
        if selected not in self._providers:
            guard = self.guard("embeddings") if selected == "remote" else None
            self._providers[selected] = get_embedding_provider(
                selected, self.settings, cache=self.cache, guard=guard
            )
            logger.info(f"Embedding provider ready: {self._providers[selected].model_id}")
        return self._providers[selected]

    def code_strategy(self, name: str | None = None) -> CodeExtractionStrategy:
        selected = (name or self.settings.code_strategy).strip().lower()
        if selected == "local":
            return LexicalCodeStrategy()
        if selected == "llm":
            if not self.settings.openrouter_api_key:
                raise ConfigurationError("The llm code strategy needs OPENROUTER_API_KEY")
            return LLMCodeStrategy(
                llm_client.client(),
                model=llm_client.get_model(),
                guard=self.guard("llm"),
                max_tokens=self.settings.llm_coding_max_tokens,
                retry_max=self.settings.provider_retry_max,
                backoff_seconds=self.settings.provider_retry_backoff_seconds,
            )
        raise ConfigurationError(f"Unknown code strategy {name!r}; expected 'local' or 'llm'")

    def orchestrator(
        self,
        *,
        embedding_backend: str | None = None,
        code_strategy: str | None = None,
    ) -> ThemeExtractionOrchestrator:
        cfg = self.settings
        return ThemeExtractionOrchestrator(
            embeddings=self.embedding_provider(embedding_backend),
            coding=CodeExtractionEngine(self.code_strategy(code_strategy)),
            aggregation=ThemeAggregationEngine(cross_batch_threshold=cfg.cross_batch_merge_threshold),
            validation=ThemeValidationEngine(abstract_relaxation=cfg.abstract_distinctiveness_relaxation),
            dedup=DeduplicationEngine(threshold=cfg.dedup_similarity_threshold),
            batches=BatchOrchestrator(
                batch_size=cfg.batch_size,
                max_parallel_local=cfg.max_parallel_batches_local,
                max_parallel_remote=cfg.max_parallel_batches_remote,
            ),
            sink=self.hub.publish,
            max_parallel_sources=cfg.max_parallel_sources,
            abstract_word_limit=cfg.abstract_word_limit,
            strict_purpose=cfg.strict_purpose_validation,
        )


_engine: EngineResources | None = None


def get_engine() -> EngineResources:
    """Get or create the process-wide engine resources."""
    global _engine
    if _engine is None:
        _engine = EngineResources()
    return _engine


def reset_engine() -> None:
    global _engine
    _engine = None
