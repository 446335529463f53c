from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

from loguru import logger
from rank_bm25 import BM25Okapi

from .errors import InvalidConfigurationError
from .normalize import lexical_tokens_for_bm25
from .pipeline_types import Candidate


class BM25Retriever:
    """
    In-memory lexical retriever over a fixed set of documents.

    ``filter`` is a mapping of metadata key -> required value; a document
    passes when every key is present with an equal value.  Documents that
    share no token with the query are not returned.
    """

    name = "bm25"

    def __init__(self, documents: Iterable[Candidate] = ()):
        self._documents: List[Candidate] = []
        self._bm25: Optional[BM25Okapi] = None
        self.add(documents)

    def __len__(self) -> int:
        return len(self._documents)

    def add(self, documents: Iterable[Candidate]) -> None:
        new_docs = list(documents)
        if not new_docs:
            return
        self._documents.extend(new_docs)
        corpus_tokens = [lexical_tokens_for_bm25(d.text) for d in self._documents]
        self._bm25 = BM25Okapi(corpus_tokens)
        logger.info("Constructed BM25Okapi index over {} documents", len(self._documents))

    async def retrieve(
        self,
        query: str,
        limit: int,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[Candidate]:
        if limit <= 0:
            raise InvalidConfigurationError(f"limit must be >= 1, got {limit}")
        tokens = lexical_tokens_for_bm25(query or "")
        if self._bm25 is None or not tokens:
            return []

        scores = self._bm25.get_scores(tokens)
        ranked = sorted(
            ((pos, float(s)) for pos, s in enumerate(scores) if s > 0),
            key=lambda x: (-x[1], x[0]),
        )

        out: List[Candidate] = []
        for pos, score in ranked:
            doc = self._documents[pos]
            if filter and not _matches(doc, filter):
                continue
            out.append(doc.with_score(score))
            if len(out) >= limit:
                break

        logger.debug("BM25 returned {} of {} documents for query={!r}", len(out), len(self), query)
        return out


def _matches(doc: Candidate, filter: Mapping[str, Any]) -> bool:
    return all(key in doc.metadata and doc.metadata[key] == value for key, value in filter.items())
