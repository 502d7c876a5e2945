"""
Shared test fixtures for the bookrag suite.

Provides: deterministic hashing embedding provider, counting answer
generator, an in-memory FAISS index with a small two-module book ingested.
No test touches the network.
"""
from __future__ import annotations

import hashlib
import re

import pytest

from bookrag.chunking.chunker import Chunker
from bookrag.embedding.embedder import Embedder
from bookrag.embedding.faiss_index import FAISSVectorIndex
from bookrag.embedding.pipeline import IngestionPipeline
from bookrag.loading.base_loader import InMemoryLoader
from bookrag.retrieval.retriever import Retriever
from bookrag.serving.pipeline import RAGPipeline

_TOKEN_RE = re.compile(r"[a-z0-9]+")

COLLECTION = "book"


class HashingEmbeddingProvider:
    """Bag-of-words vectors: each lowercase token hashed into one of `dimensions` buckets."""

    def __init__(self, dimensions: int = 2048, model_id: str = "hash-bow-v1") -> None:
        self.model_id = model_id
        self.dimensions = dimensions
        self.calls: list[list[str]] = []

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        tokens = _TOKEN_RE.findall(text.lower())
        for token in tokens:
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimensions
            vec[bucket] += 1.0
        if not tokens:
            vec[0] = 1.0
        return vec


class CountingGenerator:
    """Answer generator double that records every prompt it receives."""

    model = "counting-generator"

    def __init__(self, answer: str = "A node is a process that performs computation [1].", error=None) -> None:
        self.answer = answer
        self.error = error
        self.calls = []

    def generate(self, prompt):
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer


BOOK_RECORDS = [
    {
        "source_path": "module-1/ros2-nodes.md",
        "title": "ROS 2 Nodes",
        "raw_text": (
            "# ROS 2 Nodes\n\n"
            "A node is a process that performs computation in a ROS 2 graph. "
            "Nodes communicate with each other over topics, services and actions.\n\n"
            "## Publishers\n\n"
            "A publisher node sends messages on a topic. Any subscriber node "
            "listening on the same topic receives every message.\n"
        ),
    },
    {
        "source_path": "module-2/gazebo-simulation.md",
        "title": "Gazebo Simulation",
        "raw_text": (
            "# Gazebo Simulation\n\n"
            "Gazebo simulates rigid body physics, gravity and collisions for "
            "robot models described in URDF or SDF files.\n\n"
            "## Worlds\n\n"
            "A world file declares the lighting, terrain and models loaded "
            "when the simulator starts.\n"
        ),
    },
]


@pytest.fixture
def provider() -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider()


@pytest.fixture
def embedder(provider) -> Embedder:
    return Embedder(provider, batch_size=8, backoff_min_s=0, backoff_max_s=0)


@pytest.fixture
def index() -> FAISSVectorIndex:
    return FAISSVectorIndex()


@pytest.fixture
def book_documents():
    return list(InMemoryLoader(BOOK_RECORDS).load())


@pytest.fixture
def ingestion(embedder, index) -> IngestionPipeline:
    pipeline = IngestionPipeline(Chunker(target_size=500, overlap=50), embedder, index, COLLECTION)
    pipeline.ensure_collection()
    return pipeline


@pytest.fixture
def indexed(ingestion, book_documents):
    """Index with the two-module book ingested; returns the ingestion report."""
    return ingestion.ingest(book_documents)


@pytest.fixture
def retriever(index, embedder, indexed) -> Retriever:
    return Retriever(index=index, embedder=embedder, collection=COLLECTION, limit=5, score_threshold=0.3)


@pytest.fixture
def generator() -> CountingGenerator:
    return CountingGenerator()


@pytest.fixture
def rag_pipeline(retriever, generator) -> RAGPipeline:
    return RAGPipeline(retriever=retriever, generator=generator)
