from __future__ import annotations

import math
import os

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------
# Model names (pinned)
# ---------------------------

# Local dense encoder used by encoders.SentenceTransformerEmbedding
ST_ENCODER_MODEL = os.getenv("ST_ENCODER_MODEL", "BAAI/bge-base-en-v1.5")


# ---------------------------
# MMR diversification
# ---------------------------

MMR_LAMBDA = float(os.getenv("MMR_LAMBDA", "0.5"))              # 1.0 = relevance only
MMR_CANDIDATE_MULTIPLIER = int(os.getenv("MMR_CANDIDATE_MULTIPLIER", "3"))
MMR_MIN_CANDIDATE_MULTIPLIER = 2

# Candidate count at which the accelerator backend takes over from numpy
MMR_GPU_THRESHOLD = int(os.getenv("MMR_GPU_THRESHOLD", "100"))


# ---------------------------
# Batch embedding
# ---------------------------

EMBED_DEFAULT_BATCH_SIZE = int(os.getenv("EMBED_DEFAULT_BATCH_SIZE", "100"))
EMBED_MAX_CONCURRENCY = int(os.getenv("EMBED_MAX_CONCURRENCY", "3"))

EMBEDDING_CACHE_SIZE = int(os.getenv("EMBEDDING_CACHE_SIZE", "10000"))


# ---------------------------
# Text processing
# ---------------------------

MAX_INPUT_CHARS = 20_000  # input size cap for lexical normalisation


# ---------------------------
# Logging / observability
# ---------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" | "json"


# ---------------------------
# Pydantic settings models
# ---------------------------

class MMRSettings(BaseModel):
    """
    Tunables for the MMR retriever.

    ``lambda_`` outside [0, 1] is clamped rather than rejected, and a
    candidate multiplier below 2 is raised to 2 so MMR always has room to
    trade relevance for diversity.  Non-finite lambdas are rejected.
    """

    model_config = ConfigDict(frozen=True)

    lambda_: float = MMR_LAMBDA
    candidate_multiplier: int = MMR_CANDIDATE_MULTIPLIER
    gpu_threshold: int = Field(default=MMR_GPU_THRESHOLD, ge=1)

    @field_validator("lambda_")
    @classmethod
    def _clamp_lambda(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError(f"lambda must be finite, got {value}")
        return max(0.0, min(1.0, value))

    @field_validator("candidate_multiplier")
    @classmethod
    def _raise_multiplier(cls, value: int) -> int:
        return max(MMR_MIN_CANDIDATE_MULTIPLIER, value)


class BatchSettings(BaseModel):
    """
    Batch embedding knobs.  ``batch_size=None`` defers to the provider's
    advertised optimum; a concurrency cap below 1 is clamped to 1.
    """

    model_config = ConfigDict(frozen=True)

    batch_size: int | None = Field(default=None, ge=1)
    max_concurrency: int = EMBED_MAX_CONCURRENCY

    @field_validator("max_concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(1, value)
