"""
Dense Retriever
----------------
Embeds the user's question and searches the vector index, then applies
the score threshold client-side so the same threshold semantics hold for
any VectorIndex backend.

Only `question_text` is embedded: the question carries the intent even
when the user has highlighted a passage.  An empty result is the normal
"nothing relevant in the book" outcome, not an error.

The retriever is stateless per query -- call retrieve() as many times
as you like from the same instance, from any thread.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import numpy as np
from langsmith import traceable
from loguru import logger

from bookrag.embedding.embedder import Embedder
from bookrag.embedding.faiss_index import VectorIndex
from bookrag.errors import InvalidInputError
from bookrag.schemas import MetadataFilter, Query, RetrievalResult

if TYPE_CHECKING:
    from bookrag.retrieval.reranker import LLMReranker


class Retriever:
    """
    Embedder + VectorIndex + threshold (+ optional LLM reranking).

    Results are ordered by similarity descending, ties by chunk_index.
    With a reranker, candidates above the threshold are reordered by the
    reranker and truncated to `limit`; nothing below the threshold is ever
    reintroduced.
    """

    def __init__(
        self,
        index: VectorIndex,
        embedder: Embedder,
        collection: str,
        limit: int = 5,
        score_threshold: float = 0.3,
        reranker: Optional["LLMReranker"] = None,
        rerank_candidates: int = 10,
    ) -> None:
        self.index = index
        self.embedder = embedder
        self.collection = collection
        self.limit = limit
        self.score_threshold = score_threshold
        self.reranker = reranker
        self.rerank_candidates = rerank_candidates

    @traceable(name="retrieve", run_type="retriever")
    def retrieve(
        self,
        query: Query,
        limit: Optional[int] = None,
        score_threshold: Optional[float] = None,
        metadata_filter: Optional[MetadataFilter] = None,
    ) -> list[RetrievalResult]:
        """
        Return the evidence for `query`, best first.

        Args:
            query:           The user request; only question_text is embedded.
            limit:           Max results (defaults to the instance limit).
            score_threshold: Minimum similarity (defaults to the instance threshold).
            metadata_filter: Overrides query.metadata_filter when given.
        """
        limit = self.limit if limit is None else limit
        if limit <= 0:
            raise InvalidInputError(f"limit must be positive, got {limit}")
        threshold = self.score_threshold if score_threshold is None else score_threshold
        flt = metadata_filter if metadata_filter is not None else query.metadata_filter

        logger.debug(f"[Retriever] Query: {query.question_text[:80]!r} | filter={flt}")

        query_vec: np.ndarray = self.embedder.embed_query(query.question_text)

        fetch = max(limit, self.rerank_candidates) if self.reranker is not None else limit
        hits = self.index.search(self.collection, query_vec, fetch, flt)
        results = [r for r in hits if r.similarity_score >= threshold]

        if self.reranker is not None and results:
            results = self.reranker.rerank(query.question_text, results, top_k=limit)
        else:
            results = results[:limit]

        if results:
            logger.info(
                f"[Retriever] {len(results)} of {len(hits)} candidates above {threshold:.2f} "
                f"(top score: {results[0].similarity_score:.4f})"
            )
        else:
            logger.info(f"[Retriever] No candidates above {threshold:.2f} ({len(hits)} searched)")
        return results
