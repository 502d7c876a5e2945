"""
bookrag - Web API Server
-------------------------
FastAPI server that wraps the RAGPipeline for the book's chat widget.

Endpoints:
  GET  /api/health           -> pipeline status, vector count, model versions
  POST /api/query            -> answer a question (optionally about a selection)
  POST /api/query/selection  -> same, but selected_text is required
  POST /api/ingest           -> re-run ingestion over the docs tree (admin)

Run from the project root:
    uvicorn app.server:app --reload --port 8000

The pipeline loads index.index_dir from config/config.yaml relative to CWD.
"""
from __future__ import annotations

import asyncio
import secrets
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from bookrag.config import Settings, load_settings
from bookrag.errors import IndexIntegrityError, InvalidInputError, TransientProviderError
from bookrag.schemas import Query

# ---------------------------------------------------------------------------
# Pipeline singleton
# ---------------------------------------------------------------------------

_pipeline = None
_settings: Optional[Settings] = None
_ingest_lock = asyncio.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the RAG pipeline once at startup; clean up on shutdown."""
    global _pipeline, _settings
    try:
        from bookrag.serving.pipeline import RAGPipeline
        from bookrag.utils.logger import setup_logger

        _settings = load_settings()
        setup_logger(_settings.logging.level, _settings.logging.file, _settings.logging.serialize)
        logger.info("[Server] Loading RAG pipeline...")
        _pipeline = RAGPipeline.from_settings(_settings)
    except FileNotFoundError as exc:
        logger.error(
            f"[Server] Index not found: {exc}\n"
            "Run ingestion first: python -m bookrag.main ingest"
        )
        raise
    yield
    _pipeline = None
    logger.info("[Server] Pipeline unloaded.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="bookrag API",
    description="Question answering grounded in the book's chapters",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    question: str = Field(min_length=1, max_length=1000)
    selected_text: Optional[str] = None
    metadata_filter: Optional[str] = Field(
        default=None, description="Module name to restrict retrieval to"
    )

    def to_query(self) -> Query:
        flt = {"module": self.metadata_filter} if self.metadata_filter else None
        try:
            return Query(
                question_text=self.question,
                selected_text=self.selected_text,
                metadata_filter=flt,
            )
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc


class SourceModel(BaseModel):
    title: str
    source_path: str
    section: str


class QueryResponse(BaseModel):
    answer: str
    sources: list[SourceModel]


class IngestResponse(BaseModel):
    documents_indexed: int
    empty_documents: int
    chunks_indexed: int
    documents_pruned: int
    failures: dict[str, str]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return _error(400, exc)


@app.exception_handler(TransientProviderError)
async def transient_handler(request: Request, exc: TransientProviderError):
    logger.warning(f"[API] Provider unavailable: {exc}")
    return _error(503, exc)


@app.exception_handler(IndexIntegrityError)
async def index_integrity_handler(request: Request, exc: IndexIntegrityError):
    logger.error(f"[API] Index integrity failure: {exc}")
    return _error(500, exc)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

def _require_pipeline():
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return _pipeline


@app.get("/api/health")
async def health():
    """Return pipeline status and collection metadata."""
    pipeline = _require_pipeline()
    config = pipeline.index.get_collection(pipeline.collection)
    return {
        "status": "ok",
        "collection": pipeline.collection,
        "vectors": pipeline.index.count(pipeline.collection),
        "embedding_model": config.embedding_model_version,
        "distance_metric": config.distance_metric.value,
        "generation_model": pipeline.generator.model,
        "reranking_enabled": pipeline.retriever.reranker is not None,
    }


async def _answer(query: Query) -> QueryResponse:
    pipeline = _require_pipeline()
    logger.info(
        f"[API] Query | selection={'yes' if query.selected_text else 'no'} | "
        f"filter={query.metadata_filter} | question={query.question_text[:80]!r}"
    )
    # The blocking pipeline.query() call runs in a thread-pool executor to
    # avoid stalling the event loop.
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, partial(pipeline.query, query))
    return QueryResponse(**result.to_dict())


@app.post("/api/query", response_model=QueryResponse)
async def query(request: QueryRequest):
    """
    Answer a question from the book.

    A blank selected_text is treated as absent.  When nothing in the book is
    relevant the answer is a fixed "not covered" message with no sources.
    """
    return await _answer(request.to_query())


@app.post("/api/query/selection", response_model=QueryResponse)
async def query_selection(request: QueryRequest):
    """Answer a question about a highlighted passage; selected_text is required."""
    if not request.selected_text or not request.selected_text.strip():
        raise HTTPException(status_code=400, detail="selected_text is required for this endpoint")
    return await _answer(request.to_query())


@app.post("/api/ingest", response_model=IngestResponse)
async def ingest(x_admin_token: Optional[str] = Header(default=None)):
    """
    Re-run ingestion over the docs tree into the live index, then persist it.

    Idempotent: an unchanged docs tree leaves the index unchanged.
    """
    pipeline = _require_pipeline()
    settings = _settings or Settings()
    expected = settings.server.admin_token
    if expected and not secrets.compare_digest(x_admin_token or "", expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")
    if _ingest_lock.locked():
        raise HTTPException(status_code=409, detail="Ingestion already running")

    async with _ingest_lock:
        loop = asyncio.get_running_loop()
        report = await loop.run_in_executor(None, partial(_run_ingest, pipeline, settings))
    return IngestResponse(
        documents_indexed=report.documents_indexed,
        empty_documents=report.empty_documents,
        chunks_indexed=report.chunks_indexed,
        documents_pruned=report.documents_pruned,
        failures=report.failures,
    )


def _run_ingest(pipeline, settings: Settings):
    from bookrag.embedding.pipeline import IngestionPipeline, save_run
    from bookrag.loading.markdown_loader import MarkdownDirectoryLoader

    logger.info(f"[API] Ingestion requested | docs_dir={settings.source.docs_dir}")
    try:
        loader = MarkdownDirectoryLoader(settings.source.docs_dir, settings.source.patterns)
    except FileNotFoundError as exc:
        raise InvalidInputError(str(exc)) from exc
    ingestion = IngestionPipeline.from_settings(settings, pipeline.retriever.embedder, pipeline.index)
    report = ingestion.ingest(loader.load(), prune=True)
    save_run(pipeline.index, report, settings.index.index_dir)
    return report
