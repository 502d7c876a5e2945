"""
Prompt Builder
---------------
Turns a Query plus its retrieval results into a grounded generation
request: every result becomes a numbered evidence block [1]..[N] in the
system prompt, and the user message carries the question (and the
highlighted passage, when there is one).

The builder is never called with zero results: the serving pipeline
answers the no-evidence case itself without a model call.
"""
from __future__ import annotations

from dataclasses import dataclass

from bookrag.chunking.strategies import segment_fenced_blocks
from bookrag.errors import InvalidInputError
from bookrag.generation.prompts import (
    EVIDENCE_SEPARATOR,
    EVIDENCE_TEMPLATE,
    QUESTION_TEMPLATE,
    REFUSAL_TEXT,
    SELECTION_QUESTION_TEMPLATE,
    SELECTION_RULES,
    SYSTEM_PROMPT,
)
from bookrag.schemas import Query, RetrievalResult


@dataclass(frozen=True)
class PromptRequest:
    """Provider-agnostic generation request."""

    system: str
    user: str
    evidence: tuple[RetrievalResult, ...]

    @property
    def evidence_count(self) -> int:
        return len(self.evidence)


class PromptBuilder:
    def __init__(self, max_evidence_chars: int = 4000) -> None:
        self.max_evidence_chars = max_evidence_chars

    def _clip(self, content: str) -> str:
        """Shorten prose to max_evidence_chars.  A fenced block the cut would split is kept whole."""
        if len(content) <= self.max_evidence_chars:
            return content
        kept: list[str] = []
        size = 0
        for segment, fenced in segment_fenced_blocks(content):
            room = self.max_evidence_chars - size
            if room <= 0:
                break
            if fenced or len(segment) <= room:
                kept.append(segment)
                size += len(segment)
            else:
                kept.append(segment[:room])
                break
        return "".join(kept)

    def build(self, query: Query, results: list[RetrievalResult]) -> PromptRequest:
        if not results:
            raise InvalidInputError("PromptBuilder needs at least one retrieval result")

        blocks = [
            EVIDENCE_TEMPLATE.format(
                index=i,
                title=r.chunk_payload.title,
                source=r.chunk_payload.source,
                section=r.chunk_payload.section or r.chunk_payload.module or "-",
                content=self._clip(r.chunk_payload.content),
            )
            for i, r in enumerate(results, start=1)
        ]

        system = SYSTEM_PROMPT.format(
            selection_rules=SELECTION_RULES if query.selected_text else "",
            refusal=REFUSAL_TEXT,
            context=EVIDENCE_SEPARATOR.join(blocks),
        )
        if query.selected_text:
            user = SELECTION_QUESTION_TEMPLATE.format(
                selected_text=query.selected_text,
                question=query.question_text,
            )
        else:
            user = QUESTION_TEMPLATE.format(question=query.question_text)

        return PromptRequest(system=system, user=user, evidence=tuple(results))
