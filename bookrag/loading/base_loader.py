"""Abstract base class for all document loaders."""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import Any, Iterator, Mapping

from loguru import logger

from bookrag.errors import InvalidInputError
from bookrag.schemas import Document, document_id_for
from bookrag.utils.helpers import slugify


class DocumentLoader(ABC):
    """
    All loaders inherit from this class.

    Subclasses only yield raw records shaped like
    ``{raw_text, title?, source_path, section_hierarchy?, extra_metadata?}``;
    ``load()`` normalises them into Documents with per-record error isolation,
    so one bad file never aborts an ingestion run.
    """

    def __init__(self) -> None:
        self.loaded_count: int = 0
        self.error_count: int = 0

    @abstractmethod
    def iter_records(self) -> Iterator[Mapping[str, Any]]:
        """Yield raw content records from the source."""
        ...

    def load(self) -> Iterator[Document]:
        for record in self.iter_records():
            try:
                doc = self.normalize(record)
            except InvalidInputError as exc:
                self.error_count += 1
                logger.warning(f"[{self.__class__.__name__}] Skipping record: {exc}")
                continue
            self.loaded_count += 1
            yield doc

    @staticmethod
    def normalize(record: Mapping[str, Any]) -> Document:
        """
        Map one external record onto a Document.

        A missing or blank title defaults to a slug of the source path's file
        name; a missing section hierarchy is derived from the path segments.
        """
        source_path = str(record.get("source_path") or "").strip()
        if not source_path:
            raise InvalidInputError("record has no source_path")
        raw_text = record.get("raw_text")
        if not isinstance(raw_text, str):
            raise InvalidInputError(f"{source_path}: raw_text must be a string")

        path = PurePosixPath(source_path.replace("\\", "/"))
        title = str(record.get("title") or "").strip() or slugify(path.stem)

        hierarchy = record.get("section_hierarchy")
        if hierarchy is None:
            hierarchy = [*path.parent.parts, path.stem]
        hierarchy = tuple(str(part) for part in hierarchy if str(part) not in ("", "."))

        return Document(
            id=document_id_for(path.as_posix()),
            raw_text=raw_text,
            title=title,
            source_path=path.as_posix(),
            section_hierarchy=hierarchy,
            extra_metadata=dict(record.get("extra_metadata") or {}),
        )


class InMemoryLoader(DocumentLoader):
    """Loads records already held in memory, such as fixture corpora or text fetched elsewhere."""

    def __init__(self, records: list[Mapping[str, Any]]) -> None:
        super().__init__()
        self.records = records

    def iter_records(self) -> Iterator[Mapping[str, Any]]:
        yield from self.records
