"""
End-to-end tests for ingestion and the query state machine.

Validates:
1. No-evidence honesty: empty sources, fixed fallback, generator never called
2. Citation subset: every source comes from the retrieved evidence, in order
3. Idempotent re-ingestion and pruning
4. Empty-module filter and empty selected_text scenarios
5. Content-policy refusals and typed error propagation
"""
import asyncio
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from bookrag.chunking.chunker import Chunker
from bookrag.config import IndexConfig, Settings, SourceConfig
from bookrag.embedding.embedder import Embedder, OpenAIEmbeddingProvider
from bookrag.embedding.faiss_index import FAISSVectorIndex
from bookrag.embedding.pipeline import IngestionPipeline, run_ingestion
from bookrag.errors import ContentPolicyError, EmbeddingProviderError, IndexIntegrityError, TransientProviderError
from bookrag.generation.prompts import CONTENT_POLICY_RESPONSE, NO_CONTEXT_RESPONSE
from bookrag.loading.base_loader import InMemoryLoader
from bookrag.retrieval.retriever import Retriever
from bookrag.schemas import DistanceMetric, Query
from bookrag.serving.pipeline import QueryState, RAGPipeline
from bookrag.utils.helpers import load_json
from conftest import BOOK_RECORDS, COLLECTION, CountingGenerator, HashingEmbeddingProvider

FALLBACK_PREFIX = NO_CONTEXT_RESPONSE.split("{topics}")[0]


def snapshot(index):
    coll = index._get(COLLECTION)
    return {coll.entry_ids[fid]: p for fid, p in coll.payloads.items()}


class TestIngestion:
    def test_report_counts(self, indexed, index):
        assert indexed.documents_seen == 2
        assert indexed.documents_indexed == 2
        assert indexed.chunks_indexed == index.count(COLLECTION)
        assert indexed.failures == {}

    def test_payload_schema(self, indexed, index):
        for payload in snapshot(index).values():
            assert payload.content
            assert payload.title in {"ROS 2 Nodes", "Gazebo Simulation"}
            assert payload.module in {"module-1", "module-2"}
            assert payload.model_version == "hash-bow-v1"
            assert 0 <= payload.chunk_index < payload.total_chunks
            assert payload.schema_version == 1

    def test_reingestion_is_idempotent(self, ingestion, index, indexed, book_documents):
        before = snapshot(index)
        report = ingestion.ingest(book_documents)
        assert snapshot(index) == before
        assert report.stale_entries_removed == 0

    def test_duplicate_content_ranks_the_same_in_any_ingestion_order(self, ingestion, index, embedder):
        records = [
            {"source_path": path, "title": "Launch Files", "raw_text": "A launch file starts several nodes at once."}
            for path in ("module-1/x.md", "module-2/y.md", "module-3/z.md")
        ]
        docs = list(InMemoryLoader(records).load())
        query = embedder.embed_query("What does a launch file start?")

        ingestion.ingest(docs, max_workers=1)
        first = [r.chunk_payload.source for r in index.search(COLLECTION, query, 5)]
        ingestion.ingest(list(reversed(docs)), max_workers=1)
        second = [r.chunk_payload.source for r in index.search(COLLECTION, query, 5)]

        assert first == second == ["module-1/x.md", "module-2/y.md", "module-3/z.md"]

    def test_changed_document_replaces_old_chunks(self, ingestion, index, indexed):
        shorter = dict(BOOK_RECORDS[0], raw_text="A node is a process.")
        (doc,) = InMemoryLoader([shorter]).load()
        ingestion.ingest([doc])
        ros_chunks = [p for p in snapshot(index).values() if p.source == "module-1/ros2-nodes.md"]
        assert [p.content for p in ros_chunks] == ["A node is a process."]

    def test_emptied_document_removed(self, ingestion, index, indexed):
        (doc,) = InMemoryLoader([dict(BOOK_RECORDS[1], raw_text="")]).load()
        report = ingestion.ingest([doc])
        assert report.empty_documents == 1
        assert index.distinct_values(COLLECTION, "module") == ["module-1"]

    def test_prune_removes_documents_missing_from_source(self, ingestion, index, indexed, book_documents):
        report = ingestion.ingest(book_documents[:1], prune=True)
        assert report.documents_pruned == 1
        assert {p.source for p in snapshot(index).values()} == {"module-1/ros2-nodes.md"}

    def test_provider_failure_isolated_per_document(self, index, book_documents):
        class FailsOnGazebo(HashingEmbeddingProvider):
            def embed(self, texts):
                if any("Gazebo" in t for t in texts):
                    raise EmbeddingProviderError("timeout")
                return super().embed(texts)

        embedder = Embedder(FailsOnGazebo(), max_attempts=2, backoff_min_s=0, backoff_max_s=0)
        pipeline = IngestionPipeline(Chunker(500, 50), embedder, index, COLLECTION)
        pipeline.ensure_collection()
        report = pipeline.ingest(book_documents)

        assert list(report.failures) == ["module-2/gazebo-simulation.md"]
        assert report.documents_indexed == 1

    def test_auth_failure_recorded_per_document(self, index, book_documents):
        client = MagicMock()
        client.embeddings.create.side_effect = openai.AuthenticationError(
            "bad key", response=httpx.Response(401, request=httpx.Request("POST", "https://api.example.test")), body=None
        )
        embedder = Embedder(OpenAIEmbeddingProvider(dimensions=8, client=client), backoff_min_s=0, backoff_max_s=0)
        pipeline = IngestionPipeline(Chunker(500, 50), embedder, index, COLLECTION)
        pipeline.ensure_collection()

        report = pipeline.ingest(book_documents)

        assert set(report.failures) == {"module-1/ros2-nodes.md", "module-2/gazebo-simulation.md"}
        assert all(reason.startswith("InvalidInputError") for reason in report.failures.values())
        assert index.count(COLLECTION) == 0

    def test_model_change_is_fatal(self, index, indexed, book_documents):
        other = Embedder(HashingEmbeddingProvider(model_id="hash-bow-v2"))
        pipeline = IngestionPipeline(Chunker(500, 50), other, index, COLLECTION)
        with pytest.raises(IndexIntegrityError):
            pipeline.ensure_collection(DistanceMetric.COSINE)


class TestQueryStateMachine:
    def test_answer_with_sources(self, rag_pipeline, generator):
        result = rag_pipeline.query(Query(question_text="What is a node in a ROS 2 graph?"))

        assert result.path == [QueryState.RETRIEVING, QueryState.GENERATING, QueryState.DONE]
        assert result.answer == generator.answer
        assert len(generator.calls) == 1
        assert result.sources
        assert result.sources[0].source_path == "module-1/ros2-nodes.md"

    def test_citation_subset_and_order(self, rag_pipeline, generator, retriever):
        query = Query(question_text="What does a publisher node send on a topic?")
        expected = retriever.retrieve(query)
        result = rag_pipeline.query(query)

        (prompt,) = generator.calls
        evidence_paths = [r.chunk_payload.source for r in prompt.evidence]
        assert [s.source_path for s in result.sources] == evidence_paths
        assert evidence_paths == [r.chunk_payload.source for r in expected]

    def test_no_evidence_honesty(self, rag_pipeline, generator, provider):
        provider.calls.clear()
        result = rag_pipeline.query(Query(question_text="Quantum chromodynamics lattice gauge"))

        assert result.path == [QueryState.RETRIEVING, QueryState.EMPTY, QueryState.DONE]
        assert result.state == QueryState.DONE
        assert result.sources == []
        assert result.answer.startswith(FALLBACK_PREFIX)
        assert generator.calls == []
        assert len(provider.calls) == 1

    def test_fallback_suggests_covered_modules(self, rag_pipeline):
        result = rag_pipeline.query(Query(question_text="Quantum chromodynamics lattice gauge"))
        assert "- module-1" in result.answer
        assert "- module-2" in result.answer

    def test_filter_naming_empty_module(self, rag_pipeline, generator, index, embedder):
        query = Query(question_text="What is a node?", metadata_filter={"module": "module-9"})
        assert index.search(COLLECTION, embedder.embed_query(query.question_text), 5, query.metadata_filter) == []

        result = rag_pipeline.query(query)
        assert result.sources == []
        assert result.answer.startswith(FALLBACK_PREFIX)
        assert generator.calls == []

    def test_empty_selected_text_is_plain_question(self, rag_pipeline, generator):
        result = rag_pipeline.query(Query(question_text="What is a node in a ROS 2 graph?", selected_text=""))
        (prompt,) = generator.calls
        assert prompt.user == "Question: What is a node in a ROS 2 graph?"
        assert result.sources

    def test_selection_reaches_prompt(self, rag_pipeline, generator):
        rag_pipeline.query(
            Query(question_text="What is a node in a ROS 2 graph?", selected_text="A node is a process")
        )
        (prompt,) = generator.calls
        assert "A node is a process" in prompt.user

    def test_content_policy_gives_safe_answer(self, retriever):
        generator = CountingGenerator(error=ContentPolicyError("refused"))
        result = RAGPipeline(retriever, generator).query(Query(question_text="What is a node in a ROS 2 graph?"))
        assert result.answer == CONTENT_POLICY_RESPONSE
        assert result.sources == []
        assert result.policy_blocked
        assert result.state == QueryState.DONE

    def test_transient_failure_propagates_typed(self, retriever):
        generator = CountingGenerator(error=TransientProviderError("timeout"))
        with pytest.raises(TransientProviderError):
            RAGPipeline(retriever, generator).query(Query(question_text="What is a node in a ROS 2 graph?"))

    def test_response_shape(self, rag_pipeline):
        payload = rag_pipeline.query(Query(question_text="What is a node in a ROS 2 graph?")).to_dict()
        assert set(payload) == {"answer", "sources"}
        assert set(payload["sources"][0]) == {"title", "source_path", "section"}

    def test_aquery(self, rag_pipeline):
        result = asyncio.run(rag_pipeline.aquery(Query(question_text="What is a node in a ROS 2 graph?")))
        assert result.state == QueryState.DONE

    def test_empty_index_falls_back_to_default_topics(self, index, embedder, ingestion):
        generator = CountingGenerator()
        pipeline = RAGPipeline(Retriever(index, embedder, COLLECTION), generator)
        result = pipeline.query(Query(question_text="anything"))
        assert "Any topic covered" in result.answer
        assert generator.calls == []


class TestRunIngestion:
    def test_persists_index_and_report(self, tmp_path, embedder):
        chapter = tmp_path / "docs" / "module-1" / "launch-files.md"
        chapter.parent.mkdir(parents=True)
        chapter.write_text("# Launch Files\n\nA launch file starts several nodes at once.\n", encoding="utf-8")
        settings = Settings(
            index=IndexConfig(index_dir=str(tmp_path / "index")),
            source=SourceConfig(docs_dir=str(tmp_path / "docs")),
        )

        report = run_ingestion(settings, embedder)

        assert report.documents_indexed == 1
        assert FAISSVectorIndex.load(tmp_path / "index").count("book") == report.chunks_indexed
        assert load_json(tmp_path / "index" / "book" / "last_ingestion.json")["documents_indexed"] == 1

    def test_missing_docs_dir(self, tmp_path, embedder):
        settings = Settings(source=SourceConfig(docs_dir=str(tmp_path / "absent")))
        with pytest.raises(FileNotFoundError):
            run_ingestion(settings, embedder)
