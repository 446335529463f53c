"""LRU embedding cache in front of any ``EmbeddingProvider``."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict

from .config import EMBEDDING_CACHE_SIZE
from .errors import EmbeddingError, InvalidConfigurationError
from .interfaces import EmbeddingProvider
from .pipeline_types import Embedding, as_vector


class CacheStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    hits: int
    misses: int
    size: int
    max_size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class CachedEmbeddingProvider:
    """
    Wraps a provider and memoises embeddings by text.

    Entries are evicted least-recently-used once ``max_size`` is reached and,
    when ``ttl_seconds`` is set, expire that many seconds after insertion.
    ``embed_texts`` forwards only the cache misses, as a single call, and
    returns results in input order.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_size: int = EMBEDDING_CACHE_SIZE,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise InvalidConfigurationError(f"max_size must be >= 1, got {max_size}")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise InvalidConfigurationError(f"ttl_seconds must be positive, got {ttl_seconds}")

        self.provider = provider
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Embedding, float]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    @property
    def name(self) -> str:
        return f"cached:{self.provider.name}"

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    @property
    def max_tokens_per_request(self) -> int:
        return self.provider.max_tokens_per_request

    @property
    def optimal_batch_size(self) -> int:
        return self.provider.optimal_batch_size

    def _get(self, text: str) -> Optional[Embedding]:
        entry = self._entries.get(text)
        if entry is None:
            return None
        vector, stored_at = entry
        if self.ttl_seconds is not None and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[text]
            return None
        self._entries.move_to_end(text)
        return vector

    def _put(self, text: str, vector: Embedding) -> None:
        self._entries[text] = (vector, self._clock())
        self._entries.move_to_end(text)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.trace("Evicted embedding for {!r}", evicted[:40])

    async def embed_query(self, text: str) -> Embedding:
        cached = self._get(text)
        if cached is not None:
            self._hits += 1
            return cached
        self._misses += 1
        vector = as_vector(await self.provider.embed_query(text))
        self._put(text, vector)
        return vector

    async def embed_texts(self, texts: Sequence[str]) -> List[Embedding]:
        texts = list(texts)
        found: Dict[int, Embedding] = {}
        missing: List[Tuple[int, str]] = []

        for idx, text in enumerate(texts):
            cached = self._get(text)
            if cached is not None:
                found[idx] = cached
            else:
                missing.append((idx, text))

        self._hits += len(found)
        self._misses += len(missing)

        if missing:
            # each distinct text is embedded once per call
            unique = list(dict.fromkeys(text for _, text in missing))
            vectors = await self.provider.embed_texts(unique)
            if len(vectors) != len(unique):
                raise EmbeddingError(
                    f"Provider returned {len(vectors)} embeddings for {len(unique)} texts"
                )
            fresh = {text: as_vector(v) for text, v in zip(unique, vectors)}
            for text, vector in fresh.items():
                self._put(text, vector)
            for idx, text in missing:
                found[idx] = fresh[text]

        logger.debug("Embedding cache: {} hits, {} misses", len(texts) - len(missing), len(missing))
        return [found[i] for i in range(len(texts))]

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=len(self._entries),
            max_size=self.max_size,
        )

    def remove(self, text: str) -> bool:
        """Drop one entry; returns whether it was cached."""
        return self._entries.pop(text, None) is not None

    def prune_expired(self) -> int:
        if self.ttl_seconds is None:
            return 0
        now = self._clock()
        expired = [
            text for text, (_, stored_at) in self._entries.items()
            if now - stored_at > self.ttl_seconds
        ]
        for text in expired:
            del self._entries[text]
        if expired:
            logger.debug("Pruned {} expired embeddings", len(expired))
        return len(expired)

    def reset_statistics(self) -> None:
        self._hits = 0
        self._misses = 0

    def clear(self) -> None:
        self._entries.clear()
        self.reset_statistics()
