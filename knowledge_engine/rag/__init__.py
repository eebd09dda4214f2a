"""RAG (Retrieval-Augmented Generation) package.

Components:
- VectorStore: Qdrant collections per knowledge type plus file chunks
- EmbeddingProvider: Local ONNX model, HTTP service and OpenAI fallback chain
- Chunker: Boundary-aware document chunking
- Extractor: Text extraction from PDF, DOCX, TXT, MD
- KnowledgeBaseService: Knowledge entry lifecycle and QA deduplication
- Retriever: Hybrid knowledge-base and document search with entity isolation
- Reranker: Cross-encoder reranking
- Processor: Document ingestion pipeline
- RAGService / KnowledgeEngine: Facade and composition root
"""

from knowledge_engine.rag.chunking import Chunk, SemanticChunker, get_chunker
from knowledge_engine.rag.embedder import EmbeddingProvider
from knowledge_engine.rag.extractors import DocumentExtractor, ExtractionError
from knowledge_engine.rag.knowledge import KnowledgeBaseService
from knowledge_engine.rag.processor import DocumentProcessor, ProcessingResult
from knowledge_engine.rag.reranker import Reranker
from knowledge_engine.rag.retriever import RetrievedItem, Retriever
from knowledge_engine.rag.service import KnowledgeEngine, RAGService
from knowledge_engine.rag.vector_store import VectorStore

__all__ = [
    "Chunk",
    "DocumentExtractor",
    "DocumentProcessor",
    "EmbeddingProvider",
    "ExtractionError",
    "KnowledgeBaseService",
    "KnowledgeEngine",
    "ProcessingResult",
    "RAGService",
    "Reranker",
    "RetrievedItem",
    "Retriever",
    "SemanticChunker",
    "VectorStore",
    "get_chunker",
]
