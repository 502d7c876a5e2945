"""
Ingestion Pipeline - Load, Chunk, Embed, Index
-----------------------------------------------
Reads the docs tree with MarkdownDirectoryLoader,
chunks every Document with the boundary-aware Chunker,
embeds the chunks through the configured provider,
and replaces each document's entries in the FAISS collection.

Documents are chunked and embedded in parallel (no shared mutable state);
index writes go through replace_document(), which the index serialises.
Re-running over an unchanged docs tree leaves the index unchanged.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from bookrag.chunking.chunker import Chunker
from bookrag.config import Settings
from bookrag.embedding.embedder import Embedder
from bookrag.embedding.faiss_index import FAISSVectorIndex, VectorIndex
from bookrag.errors import IndexIntegrityError, RAGError
from bookrag.loading.markdown_loader import MarkdownDirectoryLoader
from bookrag.schemas import ChunkPayload, CollectionConfig, DistanceMetric, Document, IndexEntry
from bookrag.utils.helpers import save_json

console = Console()


@dataclass
class IngestionReport:
    """What one ingestion run did."""

    collection: str
    model_version: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    documents_seen: int = 0
    documents_indexed: int = 0
    empty_documents: int = 0
    chunks_indexed: int = 0
    stale_entries_removed: int = 0
    documents_pruned: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "model_version": self.model_version,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "documents_seen": self.documents_seen,
            "documents_indexed": self.documents_indexed,
            "empty_documents": self.empty_documents,
            "chunks_indexed": self.chunks_indexed,
            "stale_entries_removed": self.stale_entries_removed,
            "documents_pruned": self.documents_pruned,
            "failures": self.failures,
        }


class IngestionPipeline:
    """
    Loader output -> Chunker -> Embedder -> VectorIndex.

    Usage:
        pipeline = IngestionPipeline(chunker, embedder, index, "book")
        pipeline.ensure_collection()
        report = pipeline.ingest(loader.load(), prune=True)
    """

    def __init__(
        self,
        chunker: Chunker,
        embedder: Embedder,
        index: VectorIndex,
        collection: str,
    ) -> None:
        self.chunker = chunker
        self.embedder = embedder
        self.index = index
        self.collection = collection

    @classmethod
    def from_settings(cls, settings: Settings, embedder: Embedder, index: VectorIndex) -> "IngestionPipeline":
        """Pipeline over `index` with the configured chunker; the collection is ensured."""
        pipeline = cls(
            chunker=Chunker(settings.chunking.target_size, settings.chunking.overlap),
            embedder=embedder,
            index=index,
            collection=settings.index.collection_name,
        )
        pipeline.ensure_collection(settings.index.distance_metric)
        return pipeline

    def ensure_collection(self, distance_metric: DistanceMetric = DistanceMetric.COSINE) -> CollectionConfig:
        config = CollectionConfig(
            collection_name=self.collection,
            vector_dimension=self.embedder.dimensions,
            distance_metric=distance_metric,
            embedding_model_version=self.embedder.model_version,
        )
        self.index.create_collection(config)
        return config

    def prepare(self, document: Document) -> list[IndexEntry]:
        """Chunk and embed one document.  Touches no shared state."""
        chunks = self.chunker.chunk(document)
        if not chunks:
            return []
        vectors = self.embedder.embed([c.text for c in chunks])
        return [
            IndexEntry(
                id=chunk.chunk_id,
                vector=vector,
                payload=ChunkPayload.from_chunk(chunk, len(chunks), self.embedder.model_version),
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    def ingest(
        self,
        documents: Iterable[Document],
        max_workers: int = 4,
        prune: bool = False,
        on_document_done: Optional[Callable[[Document], None]] = None,
    ) -> IngestionReport:
        """
        Replace every given document in the index.

        A provider or input failure on one document is recorded in the report
        and leaves that document's previous entries untouched.  An
        IndexIntegrityError aborts the run.  With prune=True, documents in
        the index that were not seen in this run are deleted.
        """
        report = IngestionReport(collection=self.collection, model_version=self.embedder.model_version)
        docs = list(documents)
        report.documents_seen = len(docs)
        logger.info(f"[Ingestion] {len(docs)} document(s) -> collection {self.collection!r}")

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = {pool.submit(self.prepare, doc): doc for doc in docs}
            for future in as_completed(futures):
                doc = futures[future]
                try:
                    entries = future.result()
                    removed = self.index.replace_document(self.collection, doc.id, entries)
                except IndexIntegrityError:
                    for pending in futures:
                        pending.cancel()
                    raise
                except RAGError as exc:
                    report.failures[doc.source_path] = f"{type(exc).__name__}: {exc}"
                    logger.warning(f"[Ingestion] {doc.source_path} failed: {exc}")
                else:
                    report.stale_entries_removed += removed
                    if entries:
                        report.documents_indexed += 1
                        report.chunks_indexed += len(entries)
                    else:
                        report.empty_documents += 1
                if on_document_done is not None:
                    on_document_done(doc)

        if prune:
            seen = {doc.id for doc in docs}
            for doc_id in sorted(self.index.document_ids(self.collection) - seen):
                self.index.delete_document(self.collection, doc_id)
                report.documents_pruned += 1
            if report.documents_pruned:
                logger.info(f"[Ingestion] Pruned {report.documents_pruned} document(s) no longer in the source")

        report.completed_at = datetime.now(timezone.utc)
        logger.info(
            f"[Ingestion] Done | indexed={report.documents_indexed} empty={report.empty_documents} "
            f"chunks={report.chunks_indexed} stale_removed={report.stale_entries_removed} "
            f"failed={len(report.failures)}"
        )
        return report


def save_run(index: FAISSVectorIndex, report: IngestionReport, index_dir: str | Path) -> None:
    """Persist the index and the report of the run that produced it."""
    index.save(Path(index_dir))
    save_json(report.to_dict(), Path(index_dir) / report.collection / "last_ingestion.json")


def run_ingestion(
    settings: Settings,
    embedder: Embedder,
    docs_dir: Optional[str] = None,
    prune: bool = True,
    max_workers: int = 4,
) -> IngestionReport:
    """
    Execute a full ingestion run with terminal progress output:
      1. Load documents from the docs tree
      2. Chunk + embed in parallel, replace per document
      3. Save the index and the run report
    """
    index_dir = Path(settings.index.index_dir)
    console.print()
    console.print(
        Panel(
            "[bold cyan]bookrag[/bold cyan]\n"
            "[white]Ingestion - Chunking, Embedding, Indexing[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )

    # -- Step 1: Load documents ------------------------------------------------
    console.print("\n[bold cyan]Step 1 / 3 - Loading documents[/bold cyan]")
    loader = MarkdownDirectoryLoader(docs_dir or settings.source.docs_dir, settings.source.patterns)
    docs = list(loader.load())
    console.print(f"[green][OK] {len(docs)} documents loaded[/green] ({loader.error_count} skipped)")

    index = FAISSVectorIndex.load(index_dir) if index_dir.exists() else FAISSVectorIndex()
    pipeline = IngestionPipeline.from_settings(settings, embedder, index)

    # -- Step 2: Chunk, embed, replace -----------------------------------------
    console.print("\n[bold cyan]Step 2 / 3 - Chunking and embedding[/bold cyan]")
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("[cyan]Indexing documents...[/cyan]", total=len(docs))
        report = pipeline.ingest(
            docs,
            max_workers=max_workers,
            prune=prune,
            on_document_done=lambda _doc: progress.advance(task),
        )

    # -- Step 3: Persist -------------------------------------------------------
    console.print("\n[bold cyan]Step 3 / 3 - Saving index[/bold cyan]")
    save_run(index, report, index_dir)

    usage = embedder.usage_summary()
    border = "green" if not report.failures else "yellow"
    console.print()
    console.print(
        Panel(
            "[bold green]Ingestion Complete[/bold green]\n\n"
            f"  Documents   : {report.documents_indexed:,} indexed, {report.empty_documents:,} empty\n"
            f"  Chunks      : {report.chunks_indexed:,}\n"
            f"  Vectors     : {index.count(settings.index.collection_name):,}\n"
            f"  Pruned      : {report.documents_pruned:,}\n"
            f"  Failures    : {len(report.failures):,}\n"
            f"  API calls   : {usage['total_api_calls']:,} ({usage['model']})",
            box=box.DOUBLE_EDGE,
            border_style=border,
            expand=False,
        )
    )
    for path, reason in report.failures.items():
        console.print(f"  [yellow]{path}[/yellow]: {reason}")
    return report
