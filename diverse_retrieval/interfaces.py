"""Protocol-based interfaces for embedding providers and retrievers."""

from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from .pipeline_types import Candidate, Embedding


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol for embedding providers.

    ``dimensions``, ``max_tokens_per_request`` and ``optimal_batch_size`` are
    advisory; the batch embedder uses ``optimal_batch_size`` as its default
    batch size.
    """

    name: str
    dimensions: int
    max_tokens_per_request: int
    optimal_batch_size: int

    async def embed_query(self, text: str) -> Embedding:
        """Embed a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector of length ``dimensions``
        """
        ...

    async def embed_texts(self, texts: Sequence[str]) -> List[Embedding]:
        """Embed a batch of texts.

        Args:
            texts: Texts to embed

        Returns:
            One embedding per input text, in input order
        """
        ...


@runtime_checkable
class Retriever(Protocol):
    """Protocol for retrievers.

    ``limit`` is a hard cap on the number of results.  ``filter`` is opaque
    to callers that only pass it through.
    """

    name: str

    async def retrieve(
        self,
        query: str,
        limit: int,
        filter: Optional[Any] = None,
    ) -> List[Candidate]:
        """Retrieve candidates for a query.

        Args:
            query: Query string
            limit: Maximum number of candidates to return
            filter: Optional retriever-specific filter

        Returns:
            Candidates ranked by score (descending)
        """
        ...
