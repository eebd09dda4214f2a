"""Tests for document extraction."""

from io import BytesIO

import fitz
import pytest
from docx import Document

from knowledge_engine.rag.extractors import (
    DOCX_MIME,
    PDF_MIME,
    DocumentExtractor,
    ExtractedDocument,
    ExtractionError,
    PDFExtractor,
)

LONG_PARAGRAPH = "Quarterly revenue by region is reported to the finance team every month. " * 5


def make_pdf(pages: list[str]) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_textbox(fitz.Rect(50, 50, 550, 800), text, fontsize=10)
    data = doc.tobytes()
    doc.close()
    return data


def make_docx() -> bytes:
    doc = Document()
    doc.sections[0].header.paragraphs[0].text = "Confidential"
    doc.add_heading("Revenue Policy", level=2)
    doc.add_paragraph(LONG_PARAGRAPH)
    table = doc.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Region"
    table.cell(0, 1).text = "Owner"
    table.cell(1, 0).text = "North"
    table.cell(1, 1).text = "Alice"
    buffer = BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def extractor():
    return DocumentExtractor()


class TestPlainText:
    async def test_utf8_text(self, extractor):
        result = await extractor.extract("Hello world".encode(), mime_type="text/plain")

        assert result.text == "Hello world"
        assert result.metadata["parse_method"] == "text"
        assert result.metadata["encoding"] == "utf-8"

    async def test_gb18030_fallback(self, extractor):
        result = await extractor.extract("营收报告".encode("gb18030"), mime_type="text/plain")

        assert result.text == "营收报告"
        assert result.metadata["encoding"] == "gb18030"

    async def test_sanitizes_and_classifies(self, extractor):
        result = await extractor.extract(b"tiny\x00 note", filename="note.md")

        assert "\x00" not in result.text
        assert result.metadata["mime_type"] == "text/markdown"
        assert result.metadata["content_type"] == "image"
        assert "warning" in result.metadata

    async def test_reads_from_path(self, extractor, tmp_path):
        path = tmp_path / "policy.txt"
        path.write_text(LONG_PARAGRAPH, encoding="utf-8")

        result = await extractor.extract(path)

        assert result.metadata["source"] == "policy.txt"
        assert result.metadata["content_type"] == "text"
        assert result.metadata["char_count"] == len(result.text)


class TestPDF:
    async def test_extracts_pages(self, extractor):
        data = make_pdf([LONG_PARAGRAPH, "Second page about shipping times."])

        result = await extractor.extract(data, mime_type=PDF_MIME, filename="report.pdf")

        assert result.metadata["parse_method"] == "pypdf"
        assert result.metadata["pages"] == 2
        assert "Quarterly revenue" in result.text
        assert "shipping" in result.text

    def test_falls_back_to_pymupdf(self, monkeypatch):
        def broken(self, content):
            raise ExtractionError("pypdf exploded")

        monkeypatch.setattr(PDFExtractor, "extract_primary", broken)

        result = PDFExtractor().extract(make_pdf(["Fallback text"]))

        assert result.metadata["parse_method"] == "pymupdf"
        assert "Fallback text" in result.text

    async def test_garbage_fails_both_parsers(self, extractor):
        with pytest.raises(ExtractionError, match="primary"):
            await extractor.extract(b"definitely not a pdf", mime_type=PDF_MIME)


class TestDOCX:
    async def test_structure_is_preserved(self, extractor):
        result = await extractor.extract(make_docx(), mime_type=DOCX_MIME)

        assert result.metadata["parse_method"] == "python-docx"
        assert result.metadata["has_headers"] is True
        assert result.metadata["has_tables"] is True
        assert result.metadata["has_footers"] is False
        assert "## Revenue Policy" in result.text
        assert "Region | Owner" in result.text
        assert result.text.startswith("Confidential")


class TestDispatch:
    async def test_unsupported_type(self, extractor):
        with pytest.raises(ExtractionError, match="Unsupported file type"):
            await extractor.extract(b"\x89PNG", mime_type="image/png")

    async def test_unknown_type_without_hints(self, extractor):
        with pytest.raises(ExtractionError):
            await extractor.extract(b"data")

    def test_guess_mime_type(self):
        assert DocumentExtractor.guess_mime_type("a.docx") == DOCX_MIME
        assert DocumentExtractor.guess_mime_type("a.PDF") == PDF_MIME
        assert DocumentExtractor.guess_mime_type("notes.markdown") == "text/markdown"

    def test_supports(self, extractor):
        assert extractor.supports(PDF_MIME)
        assert not extractor.supports("application/zip")

    def test_extracted_document_defaults(self):
        assert ExtractedDocument("x").metadata == {}
