import asyncio
import zlib
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from diverse_retrieval.compute import BackendKind, NumpyBackend
from diverse_retrieval.pipeline_types import Candidate


class ProviderDown(RuntimeError):
    pass


class FakeEmbeddingProvider:
    """
    Deterministic in-memory embedding provider.

    * texts listed in ``vectors`` get those exact vectors, everything else a
      seeded random vector derived from the text
    * texts in ``fail_on`` make the call that contains them raise ``ProviderDown``
    * ``latency`` (seconds, or a callable of the batch) is awaited per call
    * every batch call is recorded in ``calls``; ``max_in_flight`` tracks the
      peak number of overlapping calls
    """

    name = "fake"

    def __init__(
        self,
        dimensions: int = 8,
        optimal_batch_size: int = 100,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        fail_on: Sequence[str] = (),
        latency: Union[float, Callable[[List[str]], float]] = 0.0,
    ):
        self.dimensions = dimensions
        self.max_tokens_per_request = 8192
        self.optimal_batch_size = optimal_batch_size
        self.vectors = dict(vectors or {})
        self.fail_on = set(fail_on)
        self.latency = latency
        self.calls: List[List[str]] = []
        self.query_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def vector_for(self, text: str) -> np.ndarray:
        if text in self.vectors:
            return np.asarray(self.vectors[text], dtype="float32")
        rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
        return rng.standard_normal(self.dimensions).astype("float32")

    def _delay(self, texts: List[str]) -> float:
        return self.latency(texts) if callable(self.latency) else self.latency

    async def embed_texts(self, texts):
        texts = list(texts)
        self.calls.append(texts)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._delay(texts))
            for t in texts:
                if t in self.fail_on:
                    raise ProviderDown(f"cannot embed {t!r}")
            return [self.vector_for(t) for t in texts]
        finally:
            self.in_flight -= 1

    async def embed_query(self, text):
        self.query_calls.append(text)
        if text in self.fail_on:
            raise ProviderDown(f"cannot embed {text!r}")
        return self.vector_for(text)


class FakeRetriever:
    """Returns a fixed candidate list (capped at ``limit``) and records calls."""

    name = "fake-base"

    def __init__(self, candidates: Sequence[Candidate] = (), error: Optional[Exception] = None):
        self.candidates = list(candidates)
        self.error = error
        self.calls = []

    async def retrieve(self, query, limit, filter=None):
        self.calls.append((query, limit, filter))
        if self.error is not None:
            raise self.error
        return self.candidates[:limit]


class CountingAccelerator(NumpyBackend):
    """Always-available stand-in for a GPU backend; counts primitive calls."""

    name = "counting-accelerator"
    kind = BackendKind.GPU

    def __init__(self):
        self.calls = []

    def batch_similarity(self, query, vectors):
        self.calls.append("batch_similarity")
        return super().batch_similarity(query, vectors)

    def pairwise_similarity(self, rows, cols):
        self.calls.append("pairwise_similarity")
        return super().pairwise_similarity(rows, cols)

    def row_max(self, matrix, rows, cols):
        self.calls.append("row_max")
        return super().row_max(matrix, rows, cols)


def make_candidates(texts: Sequence[str], scores: Optional[Sequence[float]] = None) -> List[Candidate]:
    scores = list(scores) if scores is not None else [1.0] * len(texts)
    return [Candidate(id=f"c{i}", text=t, score=s) for i, (t, s) in enumerate(zip(texts, scores))]
