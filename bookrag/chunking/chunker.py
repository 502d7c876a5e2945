"""
bookrag - Boundary-Aware Chunker
---------------------------------
Splits a Document into ordered, overlapping character windows without
cutting across the structure of the chapter.

Algorithm:
  1. Fenced code blocks are cut out first and treated as atomic pieces;
     they are never split, even when larger than target_size.
  2. Prose that exceeds target_size is split with the first applicable
     boundary strategy (major heading, minor heading, paragraph, sentence,
     whitespace); any piece still too large is refined with the strategies
     that follow.  A piece nothing can split is kept whole.
  3. Pieces are accumulated greedily.  When the next piece would overflow
     target_size the chunk is flushed and the next one is seeded with the
     trailing `overlap` characters of the flushed chunk, so a concept that
     straddles the boundary survives in at least one chunk.

Every chunk's text is an exact slice of the document, so the spans (minus
overlaps) reconstruct the original text character for character.
"""
from __future__ import annotations

import bisect
import re
from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from bookrag.chunking.strategies import DEFAULT_STRATEGIES, Strategy, segment_fenced_blocks
from bookrag.errors import InvalidInputError
from bookrag.schemas import Chunk, Document

# --- Constants ----------------------------------------------------------------

TARGET_SIZE = 1000   # Upper bound on chunk length in characters
OVERLAP = 200        # Characters repeated at the head of the following chunk

_HEADING_RE = re.compile(r"^#{1,6}[ \t]+(.+?)[ \t#]*$", re.MULTILINE)


@dataclass(frozen=True)
class _Piece:
    start: int
    end: int
    atomic: bool = False


class Chunker:
    """
    Usage:
        chunker = Chunker(target_size=1000, overlap=200)
        chunks = chunker.chunk(document)
    """

    def __init__(
        self,
        target_size: int = TARGET_SIZE,
        overlap: int = OVERLAP,
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
    ) -> None:
        if target_size <= 0:
            raise InvalidInputError(f"target_size must be positive, got {target_size}")
        if overlap < 0:
            raise InvalidInputError(f"overlap must not be negative, got {overlap}")
        if overlap >= target_size:
            raise InvalidInputError(
                f"overlap ({overlap}) must be smaller than target_size ({target_size})"
            )
        self.target_size = target_size
        self.overlap = overlap
        self.strategies = tuple(strategies)

    def chunk(self, document: Document) -> list[Chunk]:
        """Chunk one Document.  Empty text yields an empty list."""
        text = document.raw_text
        if not text.strip():
            logger.debug(f"[Chunker] {document.id[:12]} | empty document -> 0 chunks")
            return []

        pieces, headings = self._pieces(text)
        spans = self._merge(pieces)

        base_meta = {
            **document.extra_metadata,
            "title": document.title,
            "source_path": document.source_path,
            "module": document.module,
            "section_hierarchy": list(document.section_hierarchy),
        }
        chunks: list[Chunk] = []
        prev_end = 0
        for ordinal, (start, end) in enumerate(spans):
            # The section is read where the chunk's own content begins, after the overlap seed.
            own_start = max(start, prev_end)
            chunks.append(
                Chunk(
                    document_id=document.id,
                    ordinal=ordinal,
                    text=text[start:end],
                    char_span=(start, end),
                    inherited_metadata={
                        **base_meta,
                        "section": self._section_for(headings, own_start, end) or document.section,
                    },
                )
            )
            prev_end = end

        logger.debug(
            f"[Chunker] {document.id[:12]} | {document.source_path} | "
            f"{len(text)} chars -> {len(chunks)} chunk(s)"
        )
        return chunks

    # --- Splitting ------------------------------------------------------------

    def _pieces(self, text: str) -> tuple[list[_Piece], list[tuple[int, str]]]:
        """Contiguous pieces covering `text`, plus (offset, heading) pairs found in prose."""
        pieces: list[_Piece] = []
        headings: list[tuple[int, str]] = []
        offset = 0
        for segment, fenced in segment_fenced_blocks(text):
            if fenced:
                pieces.append(_Piece(offset, offset + len(segment), atomic=True))
            else:
                headings.extend((offset + m.start(), m.group(1)) for m in _HEADING_RE.finditer(segment))
                pos = offset
                for part in self._refine(segment, 0):
                    pieces.append(_Piece(pos, pos + len(part)))
                    pos += len(part)
            offset += len(segment)
        return pieces, headings

    def _refine(self, text: str, level: int) -> list[str]:
        if len(text) <= self.target_size:
            return [text]
        for i in range(level, len(self.strategies)):
            parts = self.strategies[i](text, self.target_size)
            if parts is None:
                continue
            refined: list[str] = []
            for part in parts:
                refined.extend(self._refine(part, i + 1))
            return refined
        # Single token run: nothing left to split on.
        return [text]

    # --- Merging --------------------------------------------------------------

    def _merge(self, pieces: list[_Piece]) -> list[tuple[int, int]]:
        spans: list[tuple[int, int]] = []
        start, end = pieces[0].start, pieces[0].end
        atomics = [pieces[0]] if pieces[0].atomic else []

        for piece in pieces[1:]:
            if piece.end - start <= self.target_size:
                end = piece.end
                if piece.atomic:
                    atomics.append(piece)
                continue

            spans.append((start, end))

            # Seed with the flushed chunk's tail, shortened so the new chunk fits.
            new_start = min(max(end - self.overlap, piece.end - self.target_size), piece.start)
            for block in atomics:
                if block.start < new_start < block.end:
                    new_start = block.end
            atomics = [b for b in atomics if b.start >= new_start]
            if piece.atomic:
                atomics.append(piece)
            start, end = new_start, piece.end

        spans.append((start, end))
        return spans

    @staticmethod
    def _section_for(headings: list[tuple[int, str]], start: int, end: int) -> str:
        """Nearest heading at or before `start`, else the first heading before `end`."""
        if not headings:
            return ""
        offsets = [pos for pos, _ in headings]
        i = bisect.bisect_right(offsets, start) - 1
        if i >= 0:
            return headings[i][1]
        if offsets[0] < end:
            return headings[0][1]
        return ""
