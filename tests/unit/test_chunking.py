"""Tests for boundary-aware chunking."""

import pytest

from knowledge_engine.core.errors import ValidationError
from knowledge_engine.rag.chunking import SemanticChunker, chunk_text, get_chunker


class TestSemanticChunker:
    """Test window placement, boundaries and limits."""

    def test_empty_text(self):
        assert SemanticChunker().chunk("   \n ") == []

    def test_short_text_is_one_chunk(self):
        chunks = SemanticChunker().chunk("A single short paragraph.", {"source": "a.txt"})

        assert len(chunks) == 1
        assert chunks[0].index == 0
        assert chunks[0].metadata["chunk_index"] == 0
        assert chunks[0].metadata["source"] == "a.txt"
        assert chunks[0].metadata["page_start"] == 1

    def test_prefers_paragraph_break(self):
        text = "A" * 60 + "\n\n" + "B" * 60
        chunks = SemanticChunker(chunk_size=100, chunk_overlap=10).chunk(text)

        assert chunks[0].text == "A" * 60
        assert chunks[0].end_char == 62
        assert chunks[-1].text.endswith("B" * 60)

    def test_prefers_sentence_over_space(self):
        text = "word " * 10 + "end. " + "tail " * 30
        chunks = SemanticChunker(chunk_size=80, chunk_overlap=0).chunk(text)

        assert chunks[0].text.endswith("end.")

    def test_hard_cut_without_separators(self):
        chunks = SemanticChunker(chunk_size=100, chunk_overlap=20).chunk("x" * 250)

        assert [(c.start_char, c.end_char) for c in chunks] == [(0, 100), (80, 180), (160, 250)]
        assert all(len(c.text) <= 100 for c in chunks)

    def test_always_moves_forward(self):
        text = ("sentence one. " * 40).strip()
        chunks = SemanticChunker(chunk_size=50, chunk_overlap=45).chunk(text)

        starts = [c.start_char for c in chunks]
        assert starts == sorted(set(starts))
        assert chunks[-1].end_char == len(text)

    def test_max_chunks_returns_partial(self):
        chunks = SemanticChunker(chunk_size=100, chunk_overlap=0, max_chunks=3).chunk("x" * 1000)

        assert len(chunks) == 3

    def test_page_estimate(self):
        chunks = SemanticChunker(chunk_size=100, chunk_overlap=0).chunk(
            "x" * 200, {"pages": 2, "parse_method": "pypdf"}
        )

        assert [(c.metadata["page_start"], c.metadata["page_end"]) for c in chunks] == [
            (1, 1),
            (2, 2),
        ]
        assert "pages" not in chunks[0].metadata
        assert chunks[0].metadata["parse_method"] == "pypdf"

    def test_chunks_are_sanitized(self):
        chunks = SemanticChunker().chunk("clean\x00 text\x07 here")

        assert chunks[0].text == "clean text here"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"chunk_size": 0},
            {"chunk_size": 100, "chunk_overlap": 100},
            {"chunk_size": 100, "chunk_overlap": -1},
            {"max_chunks": 0},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValidationError):
            SemanticChunker(**kwargs)


class TestHelpers:
    def test_chunk_text(self):
        chunks = chunk_text("x" * 150, chunk_size=100, chunk_overlap=0)
        assert len(chunks) == 2

    def test_get_chunker_passes_settings(self):
        chunker = get_chunker(chunk_size=500, chunk_overlap=50)
        assert chunker.chunk_size == 500
        assert chunker.chunk_overlap == 50
