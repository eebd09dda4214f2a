"""Document processor for RAG ingestion.

Handles document extraction, chunking, embedding, and storage.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from knowledge_engine.core.config import Settings
from knowledge_engine.rag.chunking import ChunkingStrategy, get_chunker
from knowledge_engine.rag.embedder import EmbeddingProvider
from knowledge_engine.rag.extractors import DocumentExtractor
from knowledge_engine.rag.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    """Result of document processing."""

    success: bool
    file_id: str
    chunk_count: int
    error: str | None = None
    processing_time_ms: int = 0
    embedded_count: int = 0
    content_hash: str | None = None
    unchanged: bool = False


def _elapsed_ms(start_time: datetime) -> int:
    return int((datetime.now(UTC) - start_time).total_seconds() * 1000)


class DocumentProcessor:
    """Processes documents for RAG ingestion.

    Pipeline:
    1. Extract text from document (sanitize, classify, clean)
    2. Split into chunks
    3. Generate embeddings in fixed-size batches
    4. Store in the file_vectors collection
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        extractor: DocumentExtractor | None = None,
        chunker: ChunkingStrategy | None = None,
    ):
        self.vector_store = vector_store
        self.embedder = embedder
        self.extractor = extractor or DocumentExtractor()
        self.chunker = chunker or get_chunker()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
    ) -> "DocumentProcessor":
        return cls(
            vector_store,
            embedder,
            chunker=get_chunker(
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                max_chunks=settings.max_chunks,
            ),
        )

    async def process(
        self,
        source: bytes | str | Path,
        file_metadata: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Extract and chunk a document without storing anything.

        Args:
            source: Raw bytes or a filesystem path
            file_metadata: `filename` and/or `mime_type`, plus any extra keys to
                copy onto every chunk

        Returns:
            `{"text", "metadata"}` dicts ready for embedding

        Raises:
            ExtractionError: If the document cannot be read
        """
        file_metadata = dict(file_metadata or {})
        filename = file_metadata.pop("filename", None)
        mime_type = file_metadata.pop("mime_type", None)

        document = await self.extractor.extract(source, mime_type=mime_type, filename=filename)
        logger.info(
            f"[Processor] Extracted {document.metadata.get('char_count', 0)} chars "
            f"from {document.metadata.get('source') or mime_type} "
            f"({document.metadata.get('parse_method')}, {document.metadata.get('content_type')})"
        )

        chunks = self.chunker.chunk(document.text, {**file_metadata, **document.metadata})
        logger.debug(f"[Processor] Generated {len(chunks)} chunks")
        return [{"text": chunk.text, "metadata": chunk.metadata} for chunk in chunks]

    async def index_file(
        self,
        source: bytes | str | Path,
        file_id: str,
        owner_id: str | None = None,
        entity_id: str | None = None,
        filename: str | None = None,
        mime_type: str | None = None,
        force: bool = False,
    ) -> ProcessingResult:
        """Extract, chunk, embed and store a document's chunks.

        Existing chunks of `file_id` are replaced. Chunks whose embedding
        failed are skipped. When the stored chunks were built from the same
        content (by SHA-256) nothing is re-embedded unless `force` is set.

        Returns:
            ProcessingResult with status and stored chunk count
        """
        start_time = datetime.now(UTC)
        if isinstance(source, (str, Path)) and not filename:
            filename = Path(source).name
        logger.info(f"[Processor] Starting document processing: file_id={file_id}, filename={filename}")

        try:
            content = source if isinstance(source, bytes) else Path(source).read_bytes()
            content_hash = self.compute_content_hash(content)

            if not force:
                stored_hash, stored_count = await self.vector_store.get_file_content_hash(file_id)
                if stored_count and stored_hash == content_hash:
                    logger.info(
                        f"[Processor] File {file_id} unchanged, keeping {stored_count} chunks"
                    )
                    return ProcessingResult(
                        success=True,
                        file_id=file_id,
                        chunk_count=stored_count,
                        processing_time_ms=_elapsed_ms(start_time),
                        content_hash=content_hash,
                        unchanged=True,
                    )

            chunks = await self.process(
                content,
                {"filename": filename, "mime_type": mime_type, "content_hash": content_hash},
            )

            if not chunks:
                logger.warning(f"[Processor] No chunks generated for file {file_id}")
                return ProcessingResult(
                    success=False,
                    file_id=file_id,
                    chunk_count=0,
                    error="No chunks generated from document",
                    processing_time_ms=_elapsed_ms(start_time),
                )

            logger.info(f"[Processor] Generating embeddings for {len(chunks)} chunks...")
            embeddings = await self.embedder.embed_texts([c["text"] for c in chunks])
            embedded = sum(1 for e in embeddings if e is not None)
            if embedded < len(chunks):
                logger.warning(
                    f"[Processor] {len(chunks) - embedded}/{len(chunks)} chunks of {file_id} "
                    f"could not be embedded"
                )

            stored = await self.vector_store.store_file_vectors(
                file_id,
                chunks,
                embeddings,
                owner_id=owner_id,
                entity_id=entity_id,
                filename=filename,
            )

            processing_time = _elapsed_ms(start_time)
            logger.info(
                f"[Processor] Document processed in {processing_time}ms: {stored} chunks stored"
            )
            return ProcessingResult(
                success=stored > 0,
                file_id=file_id,
                chunk_count=stored,
                error=None if stored else "No chunks could be embedded",
                processing_time_ms=processing_time,
                embedded_count=embedded,
                content_hash=content_hash,
            )

        except Exception as e:
            logger.error(f"[Processor] Document processing failed: {e}", exc_info=True)
            return ProcessingResult(
                success=False,
                file_id=file_id,
                chunk_count=0,
                error=str(e),
                processing_time_ms=_elapsed_ms(start_time),
            )

    async def delete_file(self, file_id: str) -> int:
        """Delete all chunks for a file.

        Returns:
            Number of chunks deleted
        """
        return await self.vector_store.delete_file_vectors(file_id)

    @staticmethod
    def compute_content_hash(content: bytes) -> str:
        """Compute SHA-256 hash for content deduplication."""
        return hashlib.sha256(content).hexdigest()
