from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger
from pydantic import ValidationError

from .batch_embed import BatchEmbedder
from .compute import (
    BackendKind,
    BackendPreference,
    ComputeBackend,
    NumpyBackend,
    default_accelerator,
    select_backend,
)
from .config import (
    EMBED_MAX_CONCURRENCY,
    MMR_CANDIDATE_MULTIPLIER,
    MMR_GPU_THRESHOLD,
    MMR_LAMBDA,
    MMRSettings,
)
from .errors import DimensionMismatchError, InvalidConfigurationError, RetrievalError
from .interfaces import EmbeddingProvider, Retriever
from .metrics import BackendMetrics, MetricsSnapshot, time_block
from .pipeline_types import Candidate, as_matrix, as_vector, pair_embeddings


@dataclass
class SelectionState:
    """Indices chosen so far (in rank order) and the ones still in play."""

    remaining: List[int]
    selected: List[int] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)

    def select(self, local_index: int, score: float) -> int:
        idx = self.remaining.pop(local_index)
        self.selected.append(idx)
        self.scores.append(float(score))
        return idx


def mmr_select(
    relevance: Sequence[float],
    embeddings: Any,
    k: int,
    lambda_: float = MMR_LAMBDA,
    backend: Optional[ComputeBackend] = None,
) -> List[Tuple[int, float]]:
    """
    Select up to ``k`` rows using Maximal Marginal Relevance (MMR).

    Parameters
    ----------
    relevance :
        Query similarity per candidate, shape ``(n,)``.
    embeddings :
        Candidate vectors, shape ``(n, dim)``.
    k :
        Maximum number of items to return; must be positive.
    lambda_ :
        Tradeoff between relevance and diversity.  ``1.0`` = relevance only.
    backend :
        Where the similarity math runs.  Defaults to numpy.

    Returns
    -------
    List[Tuple[int, float]]
        ``min(k, n)`` pairs of ``(row index, MMR score)`` in selection order.
    """
    if k <= 0:
        raise InvalidConfigurationError(f"k must be >= 1, got {k}")

    rel = np.asarray(relevance, dtype="float32").reshape(-1)
    n = rel.shape[0]
    if n == 0:
        return []

    emb = as_matrix(embeddings)
    if emb.shape[0] != n:
        raise DimensionMismatchError(n, emb.shape[0], what="relevance/embedding count")

    backend = backend or NumpyBackend()
    state = SelectionState(remaining=list(range(n)))

    while len(state.selected) < min(k, n):
        remaining = state.remaining

        # Diversity component: max similarity to already selected items
        if not state.selected:
            penalty = np.zeros(len(remaining), dtype="float32")
        else:
            sims = backend.pairwise_similarity(emb[remaining], emb[state.selected])
            penalty = backend.row_max(sims, len(remaining), len(state.selected))

        mmr_scores = lambda_ * rel[remaining] - (1.0 - lambda_) * penalty
        best = int(np.argmax(mmr_scores))  # first index wins ties
        state.select(best, mmr_scores[best])

    return list(zip(state.selected, state.scores))


class MMRRetriever:
    """
    Diversity-aware retriever wrapping any base ``Retriever``.

    Oversamples ``limit * candidate_multiplier`` candidates from the base
    retriever, embeds them, and re-ranks with MMR.  Returned candidates carry
    their MMR score rather than the base retriever's score.  The similarity
    phase runs on the accelerator for large candidate sets (in a worker
    thread) and on numpy otherwise; each call is recorded in ``metrics``.
    """

    name = "mmr"

    def __init__(
        self,
        base_retriever: Retriever,
        embedding_provider: EmbeddingProvider,
        lambda_: float = MMR_LAMBDA,
        candidate_multiplier: int = MMR_CANDIDATE_MULTIPLIER,
        gpu_threshold: int = MMR_GPU_THRESHOLD,
        backend_preference: BackendPreference = BackendPreference.AUTO,
        cpu_backend: Optional[ComputeBackend] = None,
        accelerator: Optional[ComputeBackend] = None,
        batch_size: Optional[int] = None,
        max_concurrency: int = EMBED_MAX_CONCURRENCY,
        metrics: Optional[BackendMetrics] = None,
    ):
        try:
            self.settings = MMRSettings(
                lambda_=lambda_,
                candidate_multiplier=candidate_multiplier,
                gpu_threshold=gpu_threshold,
            )
        except ValidationError as e:
            raise InvalidConfigurationError(str(e)) from e

        self.base_retriever = base_retriever
        self.embedding_provider = embedding_provider
        self.embedder = BatchEmbedder(embedding_provider, batch_size, max_concurrency)
        self.backend_preference = BackendPreference(backend_preference)
        self.cpu_backend = cpu_backend or NumpyBackend()
        self.accelerator = accelerator if accelerator is not None else default_accelerator()
        self._metrics = metrics if metrics is not None else BackendMetrics()

        logger.info(
            "MMR retriever over {} (lambda={}, multiplier={}, accelerator={})",
            getattr(base_retriever, "name", type(base_retriever).__name__),
            self.settings.lambda_,
            self.settings.candidate_multiplier,
            self.accelerator.name if self.accelerator.is_available else "none",
        )

    @property
    def lambda_(self) -> float:
        return self.settings.lambda_

    @property
    def candidate_multiplier(self) -> int:
        return self.settings.candidate_multiplier

    @property
    def metrics(self) -> MetricsSnapshot:
        return self._metrics.snapshot()

    @property
    def supports_accelerator(self) -> bool:
        return self.accelerator.is_available

    async def retrieve(
        self,
        query: str,
        limit: int,
        filter: Optional[Any] = None,
    ) -> List[Candidate]:
        if limit <= 0:
            raise InvalidConfigurationError(f"limit must be >= 1, got {limit}")

        fetch = limit * self.settings.candidate_multiplier
        try:
            candidates = list(await self.base_retriever.retrieve(query, fetch, filter))
        except Exception as exc:
            raise RetrievalError(f"Base retriever failed: {exc}") from exc

        if not candidates:
            logger.info("MMR: base retriever returned no candidates for query={!r}", query)
            return []
        candidates = candidates[:fetch]

        try:
            query_vec = as_vector(await self.embedding_provider.embed_query(query))
            vectors = await self.embedder.embed([c.text for c in candidates])
            embedded = pair_embeddings(candidates, vectors)
        except Exception as exc:
            raise RetrievalError(
                f"Embedding failed for {len(candidates)} candidates: {exc}"
            ) from exc

        matrix = as_matrix([e.vector for e in embedded])
        backend = select_backend(
            len(candidates),
            self.cpu_backend,
            self.accelerator,
            self.settings.gpu_threshold,
            self.backend_preference,
        )

        with time_block(self._metrics, backend.kind):
            if backend.kind == BackendKind.GPU:
                picks = await asyncio.to_thread(self._similarity_phase, backend, query_vec, matrix, limit)
            else:
                picks = self._similarity_phase(backend, query_vec, matrix, limit)

        logger.info(
            "MMR selected {} of {} candidates on {} (lambda={})",
            len(picks), len(candidates), backend.name, self.settings.lambda_,
        )
        return [candidates[idx].with_score(score) for idx, score in picks]

    def _similarity_phase(
        self,
        backend: ComputeBackend,
        query_vec: np.ndarray,
        matrix: np.ndarray,
        limit: int,
    ) -> List[Tuple[int, float]]:
        # one batched call for relevance, then the sequential MMR loop
        relevance = backend.batch_similarity(query_vec, matrix)
        return mmr_select(relevance, matrix, limit, self.settings.lambda_, backend)
