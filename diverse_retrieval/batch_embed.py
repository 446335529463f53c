"""
Bounded-concurrency batch embedding.

``BatchEmbedder`` splits a text collection into provider-sized batches and
keeps at most ``max_concurrency`` batch calls in flight.  Every batch is
tagged with its ordinal and global offset, so the ordered variants can sort
completed batches back into input order no matter which call returns first.

Variants:

* ``embed(texts)`` / ``embed_with_progress(texts, progress)``: ordered list.
* ``embed_stream(texts)``: one batch at a time, strict input order.
* ``embed_stream_concurrent(texts)``: completion order, tagged with the
  global index of each text.

A failing batch fails the whole call with the provider's exception and
cancels its in-flight siblings.  The streams raise that exception from the
``async for`` once the items produced so far have been yielded.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from itertools import islice
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import ValidationError

from .config import EMBED_DEFAULT_BATCH_SIZE, EMBED_MAX_CONCURRENCY, BatchSettings
from .errors import EmbeddingError, InvalidConfigurationError
from .interfaces import EmbeddingProvider
from .pipeline_types import Batch, Embedding, IndexedEmbedding, as_vector, make_batches

ProgressCallback = Callable[[int, int], None]


class BatchEmbedder:

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: Optional[int] = None,
        max_concurrency: int = EMBED_MAX_CONCURRENCY,
    ):
        try:
            settings = BatchSettings(batch_size=batch_size, max_concurrency=max_concurrency)
        except ValidationError as e:
            raise InvalidConfigurationError(str(e)) from e

        self.provider = provider
        self._batch_size = settings.batch_size or int(
            getattr(provider, "optimal_batch_size", EMBED_DEFAULT_BATCH_SIZE)
        )
        if self._batch_size < 1:
            raise InvalidConfigurationError(
                f"Provider {getattr(provider, 'name', provider)!r} advertises batch size {self._batch_size}"
            )
        self._max_concurrency = settings.max_concurrency

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def batch_count(self, text_count: int) -> int:
        """Number of provider calls needed for ``text_count`` texts."""
        if text_count <= 0:
            return 0
        return (text_count + self._batch_size - 1) // self._batch_size

    # -------------------------------------------------------------------
    # Ordered variants
    # -------------------------------------------------------------------

    async def embed(self, texts: Sequence[str]) -> List[Embedding]:
        """Embed ``texts``; ``result[i]`` is the embedding of ``texts[i]``."""
        return await self._embed_ordered(texts, progress=None)

    async def embed_with_progress(
        self,
        texts: Sequence[str],
        progress: ProgressCallback,
    ) -> List[Embedding]:
        """
        Same as ``embed`` but calls ``progress(completed, total)`` after each
        batch completes.  The next batch is launched only after the callback
        returns, so it should be quick.
        """
        return await self._embed_ordered(texts, progress=progress)

    async def _embed_ordered(
        self,
        texts: Sequence[str],
        progress: Optional[ProgressCallback],
    ) -> List[Embedding]:
        texts = list(texts)
        if not texts:
            return []

        batches = make_batches(texts, self._batch_size)
        total = len(batches)
        logger.debug(
            "Embedding {} texts in {} batches (batch_size={}, max_concurrency={})",
            len(texts), total, self._batch_size, self._max_concurrency,
        )

        completed: List[Tuple[int, List[Embedding]]] = []
        async with aclosing(self._iter_completed(batches)) as stream:
            async for batch, vectors in stream:
                completed.append((batch.index, vectors))
                if progress is not None:
                    progress(len(completed), total)

        completed.sort(key=lambda pair: pair[0])
        return [vec for _, vectors in completed for vec in vectors]

    # -------------------------------------------------------------------
    # Streaming variants
    # -------------------------------------------------------------------

    async def embed_stream(self, texts: Sequence[str]) -> AsyncIterator[IndexedEmbedding]:
        """Yield ``(index, embedding)`` in strict input order, one batch at a time."""
        for batch in make_batches(list(texts), self._batch_size):
            vectors = await self._embed_batch(batch)
            for offset, vec in enumerate(vectors):
                yield IndexedEmbedding(batch.start + offset, vec)

    async def embed_stream_concurrent(
        self,
        texts: Sequence[str],
    ) -> AsyncIterator[IndexedEmbedding]:
        """Yield ``(index, embedding)`` as batches complete (out of order)."""
        batches = make_batches(list(texts), self._batch_size)
        async with aclosing(self._iter_completed(batches)) as stream:
            async for batch, vectors in stream:
                for offset, vec in enumerate(vectors):
                    yield IndexedEmbedding(batch.start + offset, vec)

    # -------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------

    async def _embed_batch(self, batch: Batch) -> List[Embedding]:
        raw = await self.provider.embed_texts(batch.texts)
        vectors = [as_vector(v) for v in raw]
        if len(vectors) != len(batch.texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embeddings for batch {batch.index} "
                f"of {len(batch.texts)} texts"
            )
        logger.debug("Batch {} done ({} texts from offset {})", batch.index, len(vectors), batch.start)
        return vectors

    async def _iter_completed(
        self,
        batches: Iterable[Batch],
    ) -> AsyncIterator[Tuple[Batch, List[Embedding]]]:
        """
        Sliding window over ``batches``: at most ``max_concurrency`` calls in
        flight, a new one launched each time a result is handed out.
        """
        pending = iter(batches)
        in_flight: Dict[asyncio.Task, Batch] = {}

        def launch(batch: Batch) -> None:
            in_flight[asyncio.create_task(self._embed_batch(batch))] = batch

        try:
            for batch in islice(pending, self._max_concurrency):
                launch(batch)

            while in_flight:
                done, _ = await asyncio.wait(set(in_flight), return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: in_flight[t].index):
                    batch = in_flight.pop(task)
                    yield batch, task.result()
                    nxt = next(pending, None)
                    if nxt is not None:
                        launch(nxt)
        finally:
            if in_flight:
                logger.debug("Abandoning {} in-flight embedding batches", len(in_flight))
                for task in in_flight:
                    task.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)
