"""
Local dense encoder exposed as an ``EmbeddingProvider``.

``SentenceTransformer.encode`` is blocking, so both coroutines hand it to a
worker thread.  Vectors come back L2-normalised float32.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Sequence

import numpy as np
from loguru import logger
from sentence_transformers import SentenceTransformer

from .config import EMBED_DEFAULT_BATCH_SIZE, ST_ENCODER_MODEL
from .errors import EmbeddingError
from .pipeline_types import Embedding


class SentenceTransformerEmbedding:

    def __init__(
        self,
        model: Optional[Any] = None,
        model_name: str = ST_ENCODER_MODEL,
        optimal_batch_size: int = EMBED_DEFAULT_BATCH_SIZE,
        encode_batch_size: int = 64,
    ):
        if model is None:
            logger.info("Loading dense encoder model: {}", model_name)
            model = SentenceTransformer(model_name)
        self.model = model
        self.name = f"sentence-transformers:{model_name}"
        self.optimal_batch_size = optimal_batch_size
        self.encode_batch_size = encode_batch_size

    @property
    def dimensions(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())

    @property
    def max_tokens_per_request(self) -> int:
        return int(getattr(self.model, "max_seq_length", 512) or 512)

    def _encode(self, texts: List[str]) -> np.ndarray:
        vecs = self.model.encode(
            texts,
            batch_size=self.encode_batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return np.asarray(vecs, dtype="float32")

    async def embed_texts(self, texts: Sequence[str]) -> List[Embedding]:
        texts = list(texts)
        if not texts:
            return []
        try:
            vecs = await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            raise EmbeddingError(f"{self.name} failed to encode {len(texts)} texts: {e}") from e
        if vecs.ndim != 2 or vecs.shape[0] != len(texts):
            raise EmbeddingError(
                f"{self.name} returned shape {vecs.shape} for {len(texts)} texts"
            )
        return list(vecs)

    async def embed_query(self, text: str) -> Embedding:
        return (await self.embed_texts([text]))[0]
