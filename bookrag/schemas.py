"""
Core Pydantic schemas for the bookrag pipeline.

Every stage shares these models so a citation shown to the reader can be
traced back through the index payload and the chunk to the source file.
"""
from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

# Bump when ChunkPayload gains or loses a field.
PAYLOAD_SCHEMA_VERSION = 1

_CHUNK_NAMESPACE = uuid.UUID("6f1c2a8e-3b4d-5e6f-8a9b-0c1d2e3f4a5b")

MetadataFilter = dict[str, Union[str, int, list[Union[str, int]]]]


def document_id_for(source_path: str) -> str:
    """Stable document id, so re-ingesting a file replaces the same Document."""
    normalised = PurePosixPath(source_path.replace("\\", "/")).as_posix()
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()[:16]


def chunk_id_for(document_id: str, ordinal: int) -> str:
    return str(uuid.uuid5(_CHUNK_NAMESPACE, f"{document_id}:{ordinal}"))


# --- Enumerations ------------------------------------------------------------

class DistanceMetric(str, Enum):
    COSINE = "cosine"
    DOT = "dot"
    EUCLIDEAN = "euclidean"


# --- Documents and chunks ----------------------------------------------------

class Document(BaseModel):
    """
    One external content unit (a chapter or page) as produced by a loader.

    Immutable: re-ingestion builds a new Document and replaces the old one
    wholesale.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    raw_text: str
    title: str
    source_path: str
    section_hierarchy: tuple[str, ...] = ()
    extra_metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def checksum(self) -> str:
        """SHA-256 of raw_text."""
        return hashlib.sha256(self.raw_text.encode("utf-8")).hexdigest()

    @property
    def module(self) -> str:
        return self.section_hierarchy[0] if self.section_hierarchy else ""

    @property
    def section(self) -> str:
        return self.section_hierarchy[-1] if self.section_hierarchy else self.title


class Chunk(BaseModel):
    """
    A bounded slice of a Document.

    `text` is always exactly `document.raw_text[char_span[0]:char_span[1]]`.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str
    ordinal: int = Field(ge=0)
    text: str
    char_span: tuple[int, int]
    inherited_metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def chunk_id(self) -> str:
        return chunk_id_for(self.document_id, self.ordinal)


class ChunkPayload(BaseModel):
    """The versioned payload stored next to every vector in the index."""

    model_config = ConfigDict(frozen=True)

    content: str
    title: str
    source: str
    module: str = ""
    section: str = ""
    chunk_index: int
    total_chunks: int
    model_version: str
    document_id: str
    char_span: tuple[int, int]
    schema_version: int = PAYLOAD_SCHEMA_VERSION

    @classmethod
    def from_chunk(cls, chunk: Chunk, total_chunks: int, model_version: str) -> "ChunkPayload":
        meta = chunk.inherited_metadata
        return cls(
            content=chunk.text,
            title=meta.get("title", ""),
            source=meta.get("source_path", ""),
            module=meta.get("module", ""),
            section=meta.get("section", ""),
            chunk_index=chunk.ordinal,
            total_chunks=total_chunks,
            model_version=model_version,
            document_id=chunk.document_id,
            char_span=chunk.char_span,
        )


@dataclass(frozen=True)
class IndexEntry:
    """A (vector, payload) pair owned by the vector index."""

    id: str
    vector: np.ndarray
    payload: ChunkPayload


class CollectionConfig(BaseModel):
    """Fixed at creation; any later mismatch is rejected."""

    model_config = ConfigDict(frozen=True)

    collection_name: str = Field(min_length=1)
    vector_dimension: int = Field(gt=0)
    distance_metric: DistanceMetric = DistanceMetric.COSINE
    embedding_model_version: str = Field(min_length=1)


# --- Query path --------------------------------------------------------------

class RetrievalResult(BaseModel):
    chunk_payload: ChunkPayload
    similarity_score: float


class Query(BaseModel):
    """One user request. Blank selected_text is treated as absent."""

    question_text: str
    selected_text: Optional[str] = None
    metadata_filter: Optional[MetadataFilter] = None

    @field_validator("question_text")
    @classmethod
    def question_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("question_text must not be empty")
        return v

    @field_validator("selected_text")
    @classmethod
    def blank_selection_is_absent(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("metadata_filter")
    @classmethod
    def empty_filter_is_absent(cls, v: Optional[MetadataFilter]) -> Optional[MetadataFilter]:
        return v or None


class Source(BaseModel):
    """A citation shown next to an answer."""

    title: str
    source_path: str
    section: str

    @classmethod
    def from_result(cls, result: RetrievalResult) -> "Source":
        payload = result.chunk_payload
        return cls(
            title=payload.title,
            source_path=payload.source,
            section=payload.section or payload.module,
        )
