"""Projects the evidence that went into a prompt onto reader-facing citations."""
from __future__ import annotations

from bookrag.generation.prompt_builder import PromptRequest
from bookrag.schemas import RetrievalResult, Source


def format_citations(results: list[RetrievalResult]) -> list[Source]:
    """One Source per result, in retrieval order."""
    return [Source.from_result(r) for r in results]


def citations_for(prompt: PromptRequest) -> list[Source]:
    """Citations for exactly the evidence blocks numbered in `prompt`."""
    return format_citations(list(prompt.evidence))
