"""
Boundary strategies for the chunker.

Each strategy is a pure function ``(text, target_size) -> pieces | None``.
The pieces always concatenate back to ``text`` exactly (delimiters stay on
the piece they terminate, headings stay at the start of the piece they
open).  ``None`` means the boundary kind does not occur in ``text``.

Strategies are listed from most to least semantic in DEFAULT_STRATEGIES;
the chunker tries them in that order.
"""
from __future__ import annotations

import re
from typing import Callable, Iterable, Optional

from nltk.tokenize.punkt import PunktSentenceTokenizer

Strategy = Callable[[str, int], Optional[list[str]]]

_MAJOR_HEADING_RE = re.compile(r"^(?=#{1,2}[ \t])", re.MULTILINE)
_MINOR_HEADING_RE = re.compile(r"^(?=#{3,6}[ \t])", re.MULTILINE)
_PARAGRAPH_RE = re.compile(r"\n(?:[ \t]*\n)+")
_WHITESPACE_RE = re.compile(r"\s+")
_FENCE_OPEN_RE = re.compile(r"^[ \t]{0,3}(`{3,}|~{3,})")

# Untrained Punkt parameters: no corpus download needed.
_SENTENCES = PunktSentenceTokenizer()


def cut(text: str, positions: Iterable[int]) -> list[str]:
    """Cut ``text`` at the given offsets; offsets outside (0, len) are ignored."""
    bounds = sorted({p for p in positions if 0 < p < len(text)})
    pieces: list[str] = []
    prev = 0
    for p in bounds:
        pieces.append(text[prev:p])
        prev = p
    pieces.append(text[prev:])
    return pieces


def _split_on(pattern: re.Pattern[str], text: str) -> Optional[list[str]]:
    pieces = cut(text, (m.end() for m in pattern.finditer(text)))
    return pieces if len(pieces) > 1 else None


def split_major_headings(text: str, target_size: int) -> Optional[list[str]]:
    """Split before ``#`` and ``##`` headings."""
    return _split_on(_MAJOR_HEADING_RE, text)


def split_minor_headings(text: str, target_size: int) -> Optional[list[str]]:
    """Split before ``###`` .. ``######`` headings."""
    return _split_on(_MINOR_HEADING_RE, text)


def split_paragraphs(text: str, target_size: int) -> Optional[list[str]]:
    """Split after blank-line runs."""
    return _split_on(_PARAGRAPH_RE, text)


def split_sentences(text: str, target_size: int) -> Optional[list[str]]:
    """Split at sentence starts found by the Punkt tokenizer."""
    starts = [start for start, _ in _SENTENCES.span_tokenize(text)]
    pieces = cut(text, starts)
    return pieces if len(pieces) > 1 else None


def split_whitespace(text: str, target_size: int) -> Optional[list[str]]:
    """Split after every whitespace run (last resort)."""
    return _split_on(_WHITESPACE_RE, text)


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    split_major_headings,
    split_minor_headings,
    split_paragraphs,
    split_sentences,
    split_whitespace,
)


def segment_fenced_blocks(text: str) -> list[tuple[str, bool]]:
    """
    Separate fenced code blocks from prose.

    Returns ``(segment, is_fenced)`` pairs that concatenate back to ``text``.
    A fenced segment runs from its opening fence line through the closing
    fence line (inclusive of its newline); an unclosed fence runs to the end
    of the text.
    """
    segments: list[tuple[str, bool]] = []
    pos = 0
    prose_start = 0
    fence: Optional[str] = None
    fence_start = 0

    for line in text.splitlines(keepends=True):
        if fence is None:
            m = _FENCE_OPEN_RE.match(line)
            if m:
                if pos > prose_start:
                    segments.append((text[prose_start:pos], False))
                fence = m.group(1)
                fence_start = pos
        else:
            s = line.strip()
            if len(s) >= len(fence) and set(s) == {fence[0]}:
                end = pos + len(line)
                segments.append((text[fence_start:end], True))
                fence = None
                prose_start = end
        pos += len(line)

    if fence is not None:
        segments.append((text[fence_start:], True))
    elif prose_start < len(text):
        segments.append((text[prose_start:], False))
    return segments
