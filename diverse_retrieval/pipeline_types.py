"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, NamedTuple, Sequence

import numpy as np

from .errors import DimensionMismatchError, InvalidConfigurationError

Embedding = np.ndarray


@dataclass(frozen=True)
class Candidate:
    """A retrieved content unit with its relevance score."""

    id: str
    text: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_score(self, score: float) -> "Candidate":
        return replace(self, score=float(score))


@dataclass(frozen=True)
class EmbeddedCandidate:
    candidate: Candidate
    vector: Embedding


@dataclass(frozen=True)
class Batch:
    """A contiguous slice of the input texts, tagged with where it came from."""

    index: int
    start: int
    texts: List[str]

    @property
    def stop(self) -> int:
        return self.start + len(self.texts)


class IndexedEmbedding(NamedTuple):
    index: int
    embedding: Embedding


def make_batches(texts: Sequence[str], batch_size: int) -> List[Batch]:
    """
    Partition ``texts`` into ``ceil(len(texts) / batch_size)`` contiguous
    batches, preserving order.
    """
    if batch_size < 1:
        raise InvalidConfigurationError(f"batch_size must be >= 1, got {batch_size}")
    texts = list(texts)
    return [
        Batch(index=i, start=start, texts=texts[start : start + batch_size])
        for i, start in enumerate(range(0, len(texts), batch_size))
    ]


def as_vector(values: Any) -> Embedding:
    return np.asarray(values, dtype="float32").reshape(-1)


def as_matrix(vectors: Any) -> np.ndarray:
    """Stack a sequence of vectors into an ``(n, dim)`` float32 array."""
    if isinstance(vectors, np.ndarray):
        arr = vectors.astype("float32", copy=False)
    else:
        vectors = list(vectors)
        if not vectors:
            return np.zeros((0, 0), dtype="float32")
        lengths = {len(v) for v in vectors}
        if len(lengths) > 1:
            lo, hi = min(lengths), max(lengths)
            raise DimensionMismatchError(lo, hi)
        arr = np.asarray(vectors, dtype="float32")
    if arr.ndim == 1:
        arr = arr.reshape(1, -1) if arr.size else arr.reshape(0, 0)
    if arr.ndim != 2:
        raise ValueError(f"Expected a 2D (N, D) array of vectors, got shape {arr.shape}")
    return arr


def pair_embeddings(
    candidates: Sequence[Candidate],
    vectors: Sequence[Embedding],
) -> List[EmbeddedCandidate]:
    """Pair candidates with vectors by position."""
    if len(candidates) != len(vectors):
        raise DimensionMismatchError(len(candidates), len(vectors), what="candidate/vector count")
    return [EmbeddedCandidate(c, as_vector(v)) for c, v in zip(candidates, vectors)]
