"""Embedding providers sharing one bounded, thread-safe content-hash cache."""
from __future__ import annotations

import asyncio
import hashlib
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any

import httpx
import numpy as np
from loguru import logger

from thematica.errors import ConfigurationError, ProviderError, ProviderUnavailableError
from thematica.services.rate_limiter import ProviderGuard, call_with_retries

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def normalize_text(text: str) -> str:
    return " ".join(text.split())


class EmbeddingCache:
    """Bounded map of hash(normalized text + model id) -> (vector, stored_at).

    Eviction drops the oldest insert. Inserts are insert-if-absent, so two
    batches embedding the same text concurrently end up sharing one vector.
    """

    def __init__(self, max_entries: int = 20000):
        if max_entries < 1:
            raise ConfigurationError("embedding cache needs at least one entry")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[np.ndarray, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @staticmethod
    def key_for(text: str, model_id: str) -> str:
        payload = f"{normalize_text(text)}|{model_id}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def get(self, key: str) -> np.ndarray | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry[0]

    def put_if_absent(self, key: str, vector: np.ndarray) -> np.ndarray:
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return existing[0]
            vector.setflags(write=False)
            self._entries[key] = (vector, time.time())
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
            return vector

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
            self.evictions = 0

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }


class EmbeddingProvider(ABC):
    """Text -> fixed-length vector. Missing vectors come back as None, never zeros."""

    name = "base"
    is_remote = False

    def __init__(
        self,
        cache: EmbeddingCache | None = None,
        *,
        guard: ProviderGuard | None = None,
        retry_max: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self.cache = cache if cache is not None else EmbeddingCache()
        self.guard = guard
        self.retry_max = retry_max
        self.backoff_seconds = backoff_seconds
        self.provider_calls = 0

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @abstractmethod
    async def _embed_batch(self, texts: list[str]) -> list[np.ndarray | None]:
        """One provider round-trip for texts that missed the cache."""

    async def embed(self, text: str) -> np.ndarray | None:
        return (await self.embed_many([text]))[0]

    async def embed_many(
        self,
        texts: list[str],
        failures: dict[int, ProviderError] | None = None,
    ) -> list[np.ndarray | None]:
        """Vectors in input order. Blank text and failed items come back as None.

        When ``failures`` is given it receives index -> provider error for every
        item whose provider call failed, which tells those apart from blank input.
        """
        results: list[np.ndarray | None] = [None] * len(texts)
        pending: dict[str, list[int]] = {}
        for i, text in enumerate(texts):
            if not text or not text.strip():
                continue
            key = self.cache.key_for(text, self.model_id)
            hit = self.cache.get(key)
            if hit is not None:
                results[i] = hit
            else:
                pending.setdefault(key, []).append(i)

        if not pending:
            return results

        keys = list(pending)
        vectors = await self._compute([texts[pending[k][0]] for k in keys])
        for key, vector in zip(keys, vectors):
            if isinstance(vector, ProviderError):
                if failures is not None:
                    failures.update((i, vector) for i in pending[key])
                continue
            if vector is None:
                continue
            stored = self.cache.put_if_absent(key, vector)
            for i in pending[key]:
                results[i] = stored
        return results

    async def _attempt(self, texts: list[str]) -> list[np.ndarray | None]:
        async def operation() -> list[np.ndarray | None]:
            self.provider_calls += 1
            return await self._embed_batch(texts)

        return await call_with_retries(
            operation,
            guard=self.guard,
            retry_max=self.retry_max,
            backoff_seconds=self.backoff_seconds,
            context=f"{self.name} embedding",
        )

    async def _compute(self, texts: list[str]) -> list[np.ndarray | ProviderError | None]:
        try:
            return await self._attempt(texts)
        except ProviderError as exc:
            if len(texts) == 1:
                logger.warning(f"Embedding failed for one item: {exc}")
                return [exc]
        # Batch kept failing: isolate the bad items so the rest still embed.
        out: list[np.ndarray | ProviderError | None] = []
        for text in texts:
            try:
                out.extend(await self._attempt([text]))
            except ProviderError as exc:
                logger.warning(f"Embedding failed for one item: {exc}")
                out.append(exc)
        return out


class HashingEmbeddingService(EmbeddingProvider):
    """Deterministic feature-hashing embeddings (unigrams + bigrams). No model download."""

    name = "hashing"

    def __init__(self, dimensions: int = 384, **kwargs: Any):
        super().__init__(**kwargs)
        self.dimensions = dimensions

    @property
    def model_id(self) -> str:
        return f"hashing-v1-{self.dimensions}"

    async def _embed_batch(self, texts: list[str]) -> list[np.ndarray | None]:
        return await asyncio.to_thread(lambda: [self._vector(t) for t in texts])

    def _vector(self, text: str) -> np.ndarray | None:
        tokens = _TOKEN_RE.findall(text.lower())
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        if not features:
            return None
        vec = np.zeros(self.dimensions, dtype=np.float64)
        for feature in features:
            digest = hashlib.md5(feature.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vec[index] += sign * (1.0 if " " not in feature else 0.5)
        norm = float(np.linalg.norm(vec))
        if norm == 0.0:
            return None
        return vec / norm


class LocalEmbeddingService(EmbeddingProvider):
    """sentence-transformers model loaded lazily off the event loop."""

    name = "local"

    def __init__(self, model_name: str = "BAAI/bge-small-en-v1.5", batch_size: int = 32, **kwargs: Any):
        super().__init__(**kwargs)
        self.model_name = model_name
        self.batch_size = batch_size
        self._model: Any | None = None
        self._load_lock = asyncio.Lock()

    @property
    def model_id(self) -> str:
        return f"st:{self.model_name}"

    def _load_model(self) -> Any:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ProviderUnavailableError(
                "sentence-transformers is not installed; install the 'local' extra "
                "or choose the 'remote' or 'hashing' embedding backend",
                provider=self.name,
            ) from exc
        logger.info(f"Loading local embedding model {self.model_name}")
        return SentenceTransformer(self.model_name)

    async def _ensure_model(self) -> Any:
        async with self._load_lock:
            if self._model is None:
                self._model = await asyncio.to_thread(self._load_model)
        return self._model

    async def _compute(self, texts: list[str]) -> list[np.ndarray | ProviderError | None]:
        await self._ensure_model()
        return await super()._compute(texts)

    async def _embed_batch(self, texts: list[str]) -> list[np.ndarray | None]:
        model = self._model
        vectors = await asyncio.to_thread(
            model.encode,
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [np.asarray(row, dtype=np.float64) for row in vectors]


class RemoteEmbeddingService(EmbeddingProvider):
    """OpenAI-compatible ``POST /embeddings`` behind the provider guard."""

    name = "remote"
    is_remote = True

    def __init__(
        self,
        *,
        model_name: str,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.model_name = model_name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http = http_client

    @property
    def model_id(self) -> str:
        return f"remote:{self.model_name}"

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http

    async def _embed_batch(self, texts: list[str]) -> list[np.ndarray | None]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        response = await self._client().post(
            f"{self.base_url}/embeddings",
            json={"model": self.model_name, "input": texts},
            headers=headers,
        )
        response.raise_for_status()
        rows = sorted(response.json().get("data", []), key=lambda r: r.get("index", 0))
        if len(rows) != len(texts):
            raise ValueError(f"expected {len(texts)} embeddings, got {len(rows)}")
        return [np.asarray(row["embedding"], dtype=np.float64) for row in rows]

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


EMBEDDING_BACKENDS = ("local", "remote", "hashing")


def get_embedding_provider(
    backend: str,
    settings,
    *,
    cache: EmbeddingCache,
    guard: ProviderGuard | None = None,
) -> EmbeddingProvider:
    """Build the provider selected by configuration; unknown backends are rejected."""
    retry = {
        "retry_max": settings.provider_retry_max,
        "backoff_seconds": settings.provider_retry_backoff_seconds,
    }
    selected = (backend or "").strip().lower()
    if selected == "hashing":
        return HashingEmbeddingService(settings.hashing_embed_dim, cache=cache, **retry)
    if selected == "local":
        return LocalEmbeddingService(
            settings.local_embed_model,
            settings.local_embed_batch_size,
            cache=cache,
            **retry,
        )
    if selected == "remote":
        if guard is None:
            raise ConfigurationError("remote embeddings require a provider guard")
        return RemoteEmbeddingService(
            model_name=settings.remote_embed_model,
            base_url=settings.remote_embed_base_url,
            api_key=settings.remote_embed_api_key,
            timeout_seconds=settings.remote_embed_timeout_seconds,
            cache=cache,
            guard=guard,
            **retry,
        )
    raise ConfigurationError(
        f"Unknown embedding backend {backend!r}; expected one of: {', '.join(EMBEDDING_BACKENDS)}"
    )
