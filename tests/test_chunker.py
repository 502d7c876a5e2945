"""
Tests for the boundary-aware Chunker.

Validates:
1. Coverage: chunk spans reconstruct the document exactly
2. Bound: chunks stay within target_size unless an atomic block forces more
3. Fenced code blocks are never split
4. The two-section heading scenario at target_size=500, overlap=50
5. Construction-time validation and empty documents
"""
import pytest

from bookrag.chunking.chunker import Chunker
from bookrag.errors import InvalidInputError
from bookrag.loading.base_loader import DocumentLoader


def make_doc(text: str, source_path: str = "module-1/chapter.md"):
    return DocumentLoader.normalize({"source_path": source_path, "raw_text": text, "title": "Chapter"})


def reconstruct(chunks) -> str:
    out = []
    prev_end = 0
    for c in chunks:
        start, _ = c.char_span
        out.append(c.text[max(0, prev_end - start):])
        prev_end = c.char_span[1]
    return "".join(out)


LONG_PROSE = "\n\n".join(
    f"## Section {i}\n\n"
    + " ".join(
        f"Sentence {j} of section {i} explains how robots perceive the world with sensors."
        for j in range(12)
    )
    for i in range(6)
)


class TestChunkerConstruction:
    def test_overlap_equal_to_target_rejected(self):
        with pytest.raises(InvalidInputError):
            Chunker(target_size=100, overlap=100)

    def test_overlap_above_target_rejected(self):
        with pytest.raises(InvalidInputError):
            Chunker(target_size=100, overlap=150)

    def test_non_positive_target_rejected(self):
        with pytest.raises(InvalidInputError):
            Chunker(target_size=0, overlap=0)

    def test_negative_overlap_rejected(self):
        with pytest.raises(InvalidInputError):
            Chunker(target_size=100, overlap=-1)


class TestChunkerProperties:
    def test_empty_document_yields_no_chunks(self):
        assert Chunker().chunk(make_doc("")) == []

    def test_whitespace_document_yields_no_chunks(self):
        assert Chunker().chunk(make_doc("   \n\n \t")) == []

    def test_short_document_is_one_chunk(self):
        doc = make_doc("# Title\n\nA short chapter.")
        chunks = Chunker(target_size=500, overlap=50).chunk(doc)
        assert len(chunks) == 1
        assert chunks[0].text == doc.raw_text
        assert chunks[0].char_span == (0, len(doc.raw_text))

    @pytest.mark.parametrize("target,overlap", [(300, 0), (400, 80), (1000, 200)])
    def test_coverage(self, target, overlap):
        doc = make_doc(LONG_PROSE)
        chunks = Chunker(target_size=target, overlap=overlap).chunk(doc)

        assert len(chunks) > 1
        assert chunks[0].char_span[0] == 0
        assert chunks[-1].char_span[1] == len(LONG_PROSE)
        for prev, cur in zip(chunks, chunks[1:]):
            assert cur.char_span[0] <= prev.char_span[1], "gap between chunks"
        assert reconstruct(chunks) == LONG_PROSE

    @pytest.mark.parametrize("target,overlap", [(300, 0), (400, 80), (1000, 200)])
    def test_bound(self, target, overlap):
        chunks = Chunker(target_size=target, overlap=overlap).chunk(make_doc(LONG_PROSE))
        assert all(len(c.text) <= target for c in chunks)

    def test_text_is_exact_slice(self):
        doc = make_doc(LONG_PROSE)
        for c in Chunker(target_size=400, overlap=80).chunk(doc):
            start, end = c.char_span
            assert doc.raw_text[start:end] == c.text

    def test_ordinals_are_dense(self):
        chunks = Chunker(target_size=300, overlap=30).chunk(make_doc(LONG_PROSE))
        assert [c.ordinal for c in chunks] == list(range(len(chunks)))

    def test_chunk_ids_are_stable_across_runs(self):
        doc = make_doc(LONG_PROSE)
        first = [c.chunk_id for c in Chunker(400, 80).chunk(doc)]
        second = [c.chunk_id for c in Chunker(400, 80).chunk(doc)]
        assert first == second

    def test_single_token_run_kept_whole(self):
        doc = make_doc("x" * 1500)
        chunks = Chunker(target_size=500, overlap=50).chunk(doc)
        assert len(chunks) == 1
        assert chunks[0].text == "x" * 1500


class TestTwoSectionScenario:
    def test_combined_under_target_is_one_chunk(self):
        text = "## A\n" + "a" * 200 + "\n## B\n" + "b" * 200
        chunks = Chunker(target_size=500, overlap=50).chunk(make_doc(text))
        assert len(chunks) == 1
        assert chunks[0].text == text

    def test_combined_over_target_splits_at_heading_with_overlap(self):
        section_a = "## A\n" + "a" * 300 + "\n"
        section_b = "## B\n" + "b" * 300
        chunks = Chunker(target_size=500, overlap=50).chunk(make_doc(section_a + section_b))

        assert len(chunks) == 2
        assert chunks[0].text == section_a
        assert chunks[1].text == section_a[-50:] + section_b

    def test_section_metadata_follows_headings(self):
        text = "## A\n" + "a" * 300 + "\n## B\n" + "b" * 300
        chunks = Chunker(target_size=500, overlap=50).chunk(make_doc(text))
        assert [c.inherited_metadata["section"] for c in chunks] == ["A", "B"]


class TestFencedBlocks:
    CODE = "```python\n" + "".join(f"value_{i} = compute({i})  # step {i}\n" for i in range(30)) + "```\n"

    def test_fence_larger_than_target_is_atomic(self):
        text = "Intro paragraph about the launch file.\n\n" + self.CODE + "\nClosing remarks about the code."
        assert len(self.CODE) > 500
        doc = make_doc(text)
        chunks = Chunker(target_size=500, overlap=50).chunk(doc)

        fence_start = text.index("```python")
        fence_end = fence_start + len(self.CODE)
        holders = [c for c in chunks if self.CODE in c.text]
        assert len(holders) >= 1
        for c in chunks:
            start, end = c.char_span
            overlaps_fence = start < fence_end and end > fence_start
            if overlaps_fence:
                assert start <= fence_start and end >= fence_end, "fenced block was split"
        assert reconstruct(chunks) == text

    def test_overlap_never_starts_inside_fence(self):
        small_code = "```bash\nros2 run demo_nodes_cpp talker\n```\n"
        text = small_code + "\n" + ("Paragraph text about topics. " * 20 + "\n\n") * 3
        chunks = Chunker(target_size=300, overlap=100).chunk(make_doc(text))
        fence_end = len(small_code)
        for c in chunks:
            start, end = c.char_span
            assert not (0 < start < fence_end)

    def test_headings_inside_code_are_not_sections(self):
        text = "# Real Heading\n\n```markdown\n# Not a heading\n```\n"
        chunks = Chunker(target_size=500, overlap=50).chunk(make_doc(text))
        assert chunks[0].inherited_metadata["section"] == "Real Heading"


class TestInheritedMetadata:
    def test_document_metadata_propagates(self):
        doc = DocumentLoader.normalize(
            {
                "source_path": "module-3/isaac-sim.md",
                "raw_text": "Isaac Sim renders photorealistic scenes.",
                "title": "Isaac Sim",
                "extra_metadata": {"sidebar_position": 2},
            }
        )
        (chunk,) = Chunker().chunk(doc)
        meta = chunk.inherited_metadata
        assert meta["title"] == "Isaac Sim"
        assert meta["source_path"] == "module-3/isaac-sim.md"
        assert meta["module"] == "module-3"
        assert meta["sidebar_position"] == 2
        # No heading in the text: falls back to the document's own section.
        assert meta["section"] == "isaac-sim"
