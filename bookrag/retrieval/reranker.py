"""
LLM Reranker
-------------
Uses a single OpenAI call to score all retrieved chunks at once (listwise).
Sending all candidates in one prompt is faster and cheaper than calling
the API once per chunk.

Scoring rubric (0-10):
  9-10  Directly and fully answers the question
  6-8   Relevant, contains useful partial information
  3-5   Tangentially related
  0-2   Irrelevant or off-topic

The reranker only reorders and truncates the candidates it is given; the
similarity scores are left as retrieved.  Falls back to the original
retrieval order if the LLM call or its output is unusable.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from langsmith import traceable
from loguru import logger

from bookrag.schemas import RetrievalResult

_RERANK_SYSTEM = (
    "You are a relevance scoring engine for a textbook question-answering system. "
    "Your only job is to output valid JSON -- no prose, no markdown fences."
)

_RERANK_USER = """\
Score each passage for its relevance to the question on a scale of 0 to 10.

Rubric:
  9-10: Directly answers the question
  6-8 : Relevant, contains useful partial information
  3-5 : Tangentially related
  0-2 : Irrelevant or off-topic

Question: {query}

Passages:
{chunks_block}

Return ONLY a JSON object with a "scores" key containing one entry per passage, in order:
{{"scores": [{{"index": 1, "score": <0-10>}}, {{"index": 2, "score": <0-10>}}, ...]}}
"""


class LLMReranker:
    """
    Batch LLM reranker: one API call scores all candidates simultaneously.

    Args:
        model:     OpenAI model to use for scoring (default: gpt-4o-mini).
        timeout_s: Per-call timeout.
        client:    Pre-built OpenAI client (for testing).
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        timeout_s: float = 30.0,
        client: Optional[Any] = None,
    ) -> None:
        import openai  # lazy import

        self.model = model
        self._openai = openai
        self._client = client or openai.OpenAI(timeout=timeout_s, max_retries=1)

    @traceable(name="rerank", run_type="chain")
    def rerank(
        self,
        query: str,
        candidates: list[RetrievalResult],
        top_k: int,
    ) -> list[RetrievalResult]:
        """Score all candidates in one call, return the best `top_k` in LLM order."""
        if not candidates:
            return []

        chunks_block = "\n\n".join(
            f"[{i}] {r.chunk_payload.content[:800]}"
            for i, r in enumerate(candidates, start=1)
        )
        scores = self._score_batch(query, chunks_block, len(candidates))

        if len(scores) != len(candidates):
            logger.warning("[Reranker] Falling back to retrieval order (score mismatch)")
            return candidates[:top_k]

        # Stable sort keeps retrieval order among equal LLM scores.
        order = sorted(range(len(candidates)), key=lambda i: -scores[i])
        top = [candidates[i] for i in order[:top_k]]
        logger.info(
            f"[Reranker] {len(candidates)} -> {len(top)} chunks "
            f"| top LLM score: {scores[order[0]]:.1f}"
        )
        return top

    def _score_batch(self, query: str, chunks_block: str, expected: int) -> list[float]:
        """Call the LLM once to score all chunks. Returns [] on failure."""
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _RERANK_SYSTEM},
                    {
                        "role": "user",
                        "content": _RERANK_USER.format(query=query, chunks_block=chunks_block),
                    },
                ],
                max_tokens=256,
                temperature=0,
                response_format={"type": "json_object"},
            )
            parsed = json.loads(response.choices[0].message.content or "{}")
            if isinstance(parsed, dict):
                parsed = parsed.get("scores", parsed)
            if not isinstance(parsed, list):
                raise ValueError(f"Unexpected JSON shape: {type(parsed)}")

            index_score_map: dict[int, float] = {
                int(item["index"]): float(item["score"]) for item in parsed
            }
            return [index_score_map.get(i, 0.0) for i in range(1, expected + 1)]

        except (self._openai.OpenAIError, ValueError, KeyError, TypeError) as exc:
            logger.warning(f"[Reranker] Batch scoring failed: {exc}")
            return []
