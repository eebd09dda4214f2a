"""Document text extraction for various file types.

Supports: PDF, DOCX, TXT, Markdown

Each binary format has a primary parser and a fallback parser. Extracted text
is sanitized, classified, and cleaned before it reaches the chunker.
"""

import asyncio
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any

from knowledge_engine.core.errors import KnowledgeEngineError
from knowledge_engine.rag.text import (
    classify_text,
    clean_text,
    describe_content_type,
    sanitize_text,
)

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class ExtractionError(KnowledgeEngineError):
    """Raised when text extraction fails."""
    pass


class ParserUnavailableError(ExtractionError):
    """Raised when a parser library is not installed."""
    pass


@dataclass
class ExtractedDocument:
    """Plain text plus structural metadata."""

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


class TextExtractor(ABC):
    """Base class for text extractors."""

    @abstractmethod
    def extract(self, content: bytes) -> ExtractedDocument:
        """Extract text from document content."""
        pass

    @abstractmethod
    def supported_types(self) -> list[str]:
        """Return list of supported MIME types."""
        pass


class FallbackExtractor(TextExtractor):
    """Tries a primary parser, then a fallback parser.

    Only raises when both parsers fail.
    """

    name = "document"

    @abstractmethod
    def extract_primary(self, content: bytes) -> ExtractedDocument:
        pass

    @abstractmethod
    def extract_fallback(self, content: bytes) -> ExtractedDocument:
        pass

    def extract(self, content: bytes) -> ExtractedDocument:
        try:
            return self.extract_primary(content)
        except ExtractionError as primary_error:
            logger.warning(
                f"[Extractor] Primary {self.name} parser failed ({primary_error}), trying fallback"
            )
            try:
                return self.extract_fallback(content)
            except ExtractionError as fallback_error:
                raise ExtractionError(
                    f"{self.name.upper()} extraction failed: primary: {primary_error}; "
                    f"fallback: {fallback_error}"
                ) from fallback_error


class PlainTextExtractor(TextExtractor):
    """Extract text from plain text and markdown files."""

    def extract(self, content: bytes) -> ExtractedDocument:
        """Decode bytes to text."""
        # Try common encodings
        for encoding in ["utf-8", "gb18030", "latin-1"]:
            try:
                text = content.decode(encoding)
                return ExtractedDocument(text, {"parse_method": "text", "encoding": encoding})
            except UnicodeDecodeError:
                continue

        # Last resort: ignore errors
        return ExtractedDocument(
            content.decode("utf-8", errors="ignore"),
            {"parse_method": "text", "encoding": "utf-8"},
        )

    def supported_types(self) -> list[str]:
        return ["text/plain", "text/markdown", "text/x-markdown"]


class PDFExtractor(FallbackExtractor):
    """Extract text from PDF files using pypdf, falling back to PyMuPDF."""

    name = "pdf"

    def extract_primary(self, content: bytes) -> ExtractedDocument:
        try:
            from pypdf import PdfReader
        except ImportError:
            raise ParserUnavailableError("pypdf not installed. Run: pip install pypdf")

        try:
            reader = PdfReader(BytesIO(content))
            page_texts = [page.extract_text() or "" for page in reader.pages]
            info = reader.metadata or {}
        except Exception as e:
            raise ExtractionError(f"pypdf could not read document: {e}")

        return ExtractedDocument(
            text="\n\n".join(page_texts),
            metadata={
                "parse_method": "pypdf",
                "pages": len(page_texts),
                "title": info.get("/Title"),
                "author": info.get("/Author"),
            },
        )

    def extract_fallback(self, content: bytes) -> ExtractedDocument:
        try:
            import fitz
        except ImportError:
            raise ParserUnavailableError("PyMuPDF not installed. Run: pip install pymupdf")

        try:
            with fitz.open(stream=content, filetype="pdf") as doc:
                page_texts = [page.get_text() for page in doc]
                info = doc.metadata or {}
        except Exception as e:
            raise ExtractionError(f"PyMuPDF could not read document: {e}")

        return ExtractedDocument(
            text="\n\n".join(page_texts),
            metadata={
                "parse_method": "pymupdf",
                "pages": len(page_texts),
                "title": info.get("title") or None,
                "author": info.get("author") or None,
            },
        )

    def supported_types(self) -> list[str]:
        return [PDF_MIME]


class DOCXExtractor(FallbackExtractor):
    """Extract text from Word documents using python-docx, falling back to docx2txt."""

    name = "docx"

    def extract_primary(self, content: bytes) -> ExtractedDocument:
        """Extract body, tables, headers and footers, preserving structure."""
        try:
            from docx import Document
        except ImportError:
            raise ParserUnavailableError("python-docx not installed. Run: pip install python-docx")

        try:
            doc = Document(BytesIO(content))
        except Exception as e:
            raise ExtractionError(f"python-docx could not read document: {e}")

        headers = []
        footers = []
        for section in doc.sections:
            header_text = "\n".join(p.text for p in section.header.paragraphs if p.text.strip())
            footer_text = "\n".join(p.text for p in section.footer.paragraphs if p.text.strip())
            if header_text and header_text not in headers:
                headers.append(header_text)
            if footer_text and footer_text not in footers:
                footers.append(footer_text)

        body = []
        for para in doc.paragraphs:
            text = para.text.strip()
            if not text:
                continue
            # Preserve heading structure
            style_name = para.style.name if para.style is not None else ""
            if style_name.startswith("Heading"):
                level = style_name.replace("Heading ", "")
                try:
                    prefix = "#" * int(level) + " "
                except ValueError:
                    prefix = "# "
                body.append(f"{prefix}{text}")
            else:
                body.append(text)

        tables = []
        for table_idx, table in enumerate(doc.tables, 1):
            rows = [f"[Table {table_idx}]"]
            for row in table.rows:
                row_text = " | ".join(cell.text.strip() for cell in row.cells)
                if row_text.replace("|", "").strip():
                    rows.append(row_text)
            if len(rows) > 1:
                tables.append("\n".join(rows))

        parts = headers + body + tables + footers
        return ExtractedDocument(
            text="\n\n".join(parts),
            metadata={
                "parse_method": "python-docx",
                "paragraphs": len(body),
                "has_headers": bool(headers),
                "has_footers": bool(footers),
                "has_tables": bool(tables),
            },
        )

    def extract_fallback(self, content: bytes) -> ExtractedDocument:
        try:
            import docx2txt
        except ImportError:
            raise ParserUnavailableError("docx2txt not installed. Run: pip install docx2txt")

        try:
            text = docx2txt.process(BytesIO(content)) or ""
        except Exception as e:
            raise ExtractionError(f"docx2txt could not read document: {e}")

        return ExtractedDocument(text=text, metadata={"parse_method": "docx2txt"})

    def supported_types(self) -> list[str]:
        return [DOCX_MIME]


class DocumentExtractor:
    """Unified document extractor that delegates to specific extractors."""

    def __init__(self):
        self.extractors: list[TextExtractor] = [
            PlainTextExtractor(),
            PDFExtractor(),
            DOCXExtractor(),
        ]

        # Build MIME type mapping
        self._mime_map: dict[str, TextExtractor] = {}
        for extractor in self.extractors:
            for mime_type in extractor.supported_types():
                self._mime_map[mime_type] = extractor

    def supports(self, mime_type: str) -> bool:
        """Check if a MIME type is supported."""
        return mime_type in self._mime_map

    def supported_types(self) -> list[str]:
        """Get all supported MIME types."""
        return list(self._mime_map.keys())

    @staticmethod
    def guess_mime_type(filename: str) -> str | None:
        suffix = Path(filename).suffix.lower()
        if suffix in (".md", ".markdown"):
            return "text/markdown"
        if suffix == ".docx":
            return DOCX_MIME
        mime_type, _ = mimetypes.guess_type(filename)
        return mime_type

    def extract_bytes(
        self,
        content: bytes,
        mime_type: str,
        filename: str | None = None,
    ) -> ExtractedDocument:
        """Extract, sanitize, classify and clean document text.

        Args:
            content: Raw document bytes
            mime_type: Document MIME type
            filename: Original filename, recorded as `source`

        Returns:
            ExtractedDocument with text and metadata

        Raises:
            ExtractionError: If extraction fails or type not supported
        """
        extractor = self._mime_map.get(mime_type)

        if not extractor:
            raise ExtractionError(
                f"Unsupported file type: {mime_type}. "
                f"Supported types: {', '.join(self.supported_types())}"
            )

        raw = extractor.extract(content)

        # Sanitize before anything inspects or stores the text
        text = sanitize_text(raw.text)
        content_type = classify_text(text)
        warning = describe_content_type(content_type)
        if warning:
            logger.warning(f"[Extractor] {filename or mime_type}: {warning}")

        text = clean_text(text)

        metadata = {k: v for k, v in raw.metadata.items() if v is not None}
        metadata.update(
            {
                "source": filename,
                "mime_type": mime_type,
                "content_type": content_type,
                "char_count": len(text),
            }
        )
        if warning:
            metadata["warning"] = warning

        return ExtractedDocument(text=text, metadata=metadata)

    async def extract(
        self,
        source: bytes | str | Path,
        mime_type: str | None = None,
        filename: str | None = None,
    ) -> ExtractedDocument:
        """Extract text from bytes or a file path without blocking the loop."""
        if isinstance(source, (str, Path)):
            path = Path(source)
            filename = filename or path.name
            content = await asyncio.to_thread(path.read_bytes)
        else:
            content = source

        mime_type = mime_type or (self.guess_mime_type(filename) if filename else None)
        if not mime_type:
            raise ExtractionError("Cannot determine file type; pass mime_type or filename")

        return await asyncio.to_thread(self.extract_bytes, content, mime_type, filename)

