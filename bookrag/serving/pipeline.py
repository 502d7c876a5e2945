"""
RAG Serving Pipeline
---------------------
Orchestrates the query lifecycle as a small state machine:

    RETRIEVING  Retriever (embed question -> index search -> threshold [-> rerank])
        |
        +-- no results -----> EMPTY       fixed fallback answer, no sources
        |                       |
        +-- results --------> GENERATING  PromptBuilder -> AnswerGenerator
                                |         -> citations for every evidence block
                                v
                              DONE        {answer, sources}

The EMPTY branch never calls the generator and never embeds a second time.
A ContentPolicyError from the generator is turned into a safe generic
answer; every other failure propagates typed so the boundary layer
(CLI / HTTP) can choose the user-visible message.

The outer query() method is decorated with @traceable so LangSmith captures
retrieval and generation in a single trace.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from langsmith import traceable
from loguru import logger

from bookrag.config import Settings
from bookrag.embedding.embedder import make_embedder
from bookrag.embedding.faiss_index import FAISSVectorIndex
from bookrag.errors import ContentPolicyError
from bookrag.generation.citations import citations_for
from bookrag.generation.generator import AnswerGenerator, make_generator
from bookrag.generation.prompt_builder import PromptBuilder
from bookrag.generation.prompts import (
    CONTENT_POLICY_RESPONSE,
    NO_CONTEXT_DEFAULT_TOPICS,
    NO_CONTEXT_RESPONSE,
)
from bookrag.retrieval.reranker import LLMReranker
from bookrag.retrieval.retriever import Retriever
from bookrag.schemas import Query, Source

_MAX_FALLBACK_TOPICS = 10


class QueryState(str, Enum):
    RETRIEVING = "retrieving"
    EMPTY = "empty"
    GENERATING = "generating"
    DONE = "done"


# ---------------------------------------------------------------------------
# Result schema
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """
    Full output from a single query.

    `path` records the states the query went through, always ending in DONE.
    Timing fields are in milliseconds.
    """

    query: Query
    answer: str
    sources: list[Source]
    path: list[QueryState] = field(default_factory=list)
    policy_blocked: bool = False

    # Latency breakdown
    retrieval_ms: float = 0.0
    generation_ms: float = 0.0

    @property
    def state(self) -> QueryState:
        return self.path[-1] if self.path else QueryState.RETRIEVING

    @property
    def found_evidence(self) -> bool:
        return QueryState.GENERATING in self.path

    @property
    def total_ms(self) -> float:
        return self.retrieval_ms + self.generation_ms

    def to_dict(self) -> dict:
        """The public response shape: answer text plus ordered sources."""
        return {
            "answer": self.answer,
            "sources": [s.model_dump() for s in self.sources],
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class RAGPipeline:
    """
    End-to-end query pipeline.

    Usage:
        pipeline = RAGPipeline.from_settings(load_settings())
        result = pipeline.query(Query(question_text="What is a ROS 2 node?"))
        print(result.answer)
        for src in result.sources:
            print(src.source_path, src.section)
    """

    def __init__(
        self,
        retriever: Retriever,
        generator: AnswerGenerator,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        self.retriever = retriever
        self.generator = generator
        self.prompt_builder = prompt_builder or PromptBuilder()

    @property
    def index(self):
        return self.retriever.index

    @property
    def collection(self) -> str:
        return self.retriever.collection

    @classmethod
    def from_settings(cls, settings: Settings) -> "RAGPipeline":
        """Load the persisted index and wire the production providers."""
        index_dir = Path(settings.index.index_dir)
        logger.info(f"[RAGPipeline] Loading index from {index_dir}...")
        index = FAISSVectorIndex.load(index_dir)

        embedder = make_embedder(settings.embedding)
        reranker = LLMReranker(model=settings.retrieval.rerank_model) if settings.retrieval.rerank else None
        retriever = Retriever(
            index=index,
            embedder=embedder,
            collection=settings.index.collection_name,
            limit=settings.retrieval.limit,
            score_threshold=settings.retrieval.score_threshold,
            reranker=reranker,
            rerank_candidates=settings.retrieval.rerank_candidates,
        )
        pipeline = cls(retriever=retriever, generator=make_generator(settings.generation))
        logger.info(
            f"[RAGPipeline] Ready | {index.count(settings.index.collection_name):,} vectors | "
            f"model={pipeline.generator.model} | rerank={settings.retrieval.rerank}"
        )
        return pipeline

    @traceable(name="rag_query", run_type="chain")
    def query(self, query: Query) -> QueryResult:
        """
        Answer one query.

        Raises:
            InvalidInputError, TransientProviderError, IndexIntegrityError:
                propagated from retrieval or generation.
        """
        logger.info(
            f"[RAGPipeline] Query: {query.question_text[:100]!r} | "
            f"selection={'yes' if query.selected_text else 'no'} | filter={query.metadata_filter}"
        )
        path = [QueryState.RETRIEVING]

        # -- RETRIEVING ---------------------------------------------------------
        t0 = time.perf_counter()
        results = self.retriever.retrieve(query)
        retrieval_ms = (time.perf_counter() - t0) * 1000

        # -- EMPTY --------------------------------------------------------------
        if not results:
            path += [QueryState.EMPTY, QueryState.DONE]
            logger.info(f"[RAGPipeline] No evidence | retrieve={retrieval_ms:.0f}ms")
            return QueryResult(
                query=query,
                answer=self._fallback_answer(),
                sources=[],
                path=path,
                retrieval_ms=retrieval_ms,
            )

        # -- GENERATING ---------------------------------------------------------
        path.append(QueryState.GENERATING)
        prompt = self.prompt_builder.build(query, results)
        t1 = time.perf_counter()
        try:
            answer = self.generator.generate(prompt)
        except ContentPolicyError as exc:
            logger.warning(f"[RAGPipeline] Generation refused by content policy: {exc}")
            path.append(QueryState.DONE)
            return QueryResult(
                query=query,
                answer=CONTENT_POLICY_RESPONSE,
                sources=[],
                path=path,
                policy_blocked=True,
                retrieval_ms=retrieval_ms,
                generation_ms=(time.perf_counter() - t1) * 1000,
            )
        generation_ms = (time.perf_counter() - t1) * 1000

        # -- DONE ---------------------------------------------------------------
        path.append(QueryState.DONE)
        logger.info(
            f"[RAGPipeline] Complete | evidence={prompt.evidence_count} | "
            f"retrieve={retrieval_ms:.0f}ms generate={generation_ms:.0f}ms"
        )
        return QueryResult(
            query=query,
            answer=answer,
            sources=citations_for(prompt),
            path=path,
            retrieval_ms=retrieval_ms,
            generation_ms=generation_ms,
        )

    async def aquery(self, query: Query) -> QueryResult:
        """Run query() in a worker thread so the event loop stays free."""
        return await asyncio.to_thread(self.query, query)

    def _fallback_answer(self) -> str:
        topics = self.index.distinct_values(self.collection, "module")[:_MAX_FALLBACK_TOPICS]
        listing = "\n".join(f"- {t}" for t in topics) if topics else NO_CONTEXT_DEFAULT_TOPICS
        return NO_CONTEXT_RESPONSE.format(topics=listing)
