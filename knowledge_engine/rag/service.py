"""RAG service facade and the engine that wires it together.

`RAGService` is what callers use: query with optional reranking, knowledge
management by type, and document ingestion. `KnowledgeEngine` builds every
component from settings and owns their init/shutdown.
"""

import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

from knowledge_engine.core.config import Settings
from knowledge_engine.core.errors import EntryNotFoundError, UnsupportedKnowledgeTypeError
from knowledge_engine.db.database import Database
from knowledge_engine.db.models import KnowledgeType
from knowledge_engine.rag.embedder import EmbeddingProvider
from knowledge_engine.rag.knowledge import KnowledgeBaseService
from knowledge_engine.rag.offline import LocalModelResolver
from knowledge_engine.rag.processor import DocumentProcessor, ProcessingResult
from knowledge_engine.rag.reranker import Reranker
from knowledge_engine.rag.retriever import RetrievedItem, Retriever
from knowledge_engine.rag.vector_store import VectorStore, coerce_type

logger = logging.getLogger(__name__)

UPDATABLE_TYPES = (
    KnowledgeType.QA_PAIR,
    KnowledgeType.SYNONYM,
    KnowledgeType.BUSINESS_KNOWLEDGE,
)


def format_result(rank: int, item: RetrievedItem) -> dict[str, Any]:
    """Flatten a retrieved item into the response shape, with type-specific fields."""
    meta = item.metadata or {}
    result: dict[str, Any] = {
        "rank": rank,
        "id": item.id,
        "type": item.type,
        "title": item.title or "Untitled",
        "content": item.content,
        "score": item.score,
        "metadata": meta,
    }
    if item.original_score is not None:
        result["original_score"] = item.original_score
    if item.rerank_score is not None:
        result["rerank_score"] = item.rerank_score

    if item.type == KnowledgeType.SEMANTIC_MODEL.value:
        result.update(
            semantic_model_id=meta.get("semantic_model_id"),
            database_name=meta.get("database_name"),
            table_name=meta.get("table_name"),
        )
    elif item.type == KnowledgeType.QA_PAIR.value:
        result.update(question=meta.get("question"), answer=meta.get("answer"))
    elif item.type == KnowledgeType.SYNONYM.value:
        result.update(noun=meta.get("noun"), synonyms=meta.get("synonyms") or [])
    elif item.type == KnowledgeType.BUSINESS_KNOWLEDGE.value:
        result.update(category=meta.get("category"), tags=meta.get("tags") or [])
    elif item.type == KnowledgeType.FILE.value:
        result.update(
            file_id=meta.get("file_id"),
            filename=meta.get("filename"),
            page=meta.get("page"),
        )
    return result


class RAGService:
    """Query and management entry point over the knowledge engine."""

    def __init__(
        self,
        knowledge: KnowledgeBaseService,
        retriever: Retriever,
        reranker: Reranker,
        processor: DocumentProcessor,
        default_top_k: int = 10,
    ):
        self.knowledge = knowledge
        self.retriever = retriever
        self.reranker = reranker
        self.processor = processor
        self.default_top_k = default_top_k

    # ============================================
    # Query
    # ============================================

    async def retrieve(
        self,
        query: str,
        owner_id: str | None = None,
        types: list[KnowledgeType | str] | None = None,
        file_ids: list[str] | None = None,
        entity_id: str | None = None,
        top_k: int | None = None,
        use_reranking: bool = True,
        enhanced_reranking: bool = False,
    ) -> list[RetrievedItem]:
        """Ranked snippets for a query.

        `owner_id` is accepted for auditing; the knowledge base is shared and
        isolation is by `entity_id`. A missing or zero `top_k` means the
        configured default; a negative one yields no results.
        """
        top_k = top_k or self.default_top_k
        if top_k < 0:
            logger.warning(f"[RAGService] Invalid top_k {top_k}, returning no results")
            return []

        fetch_k = top_k * 2 if use_reranking else top_k
        items = await self.retriever.hybrid_retrieve(
            query, types=types, file_ids=file_ids, entity_id=entity_id, top_k=fetch_k
        )
        logger.debug(f"[RAGService] Retrieved {len(items)} candidates for owner={owner_id}")

        if not use_reranking:
            return items[:top_k]
        if enhanced_reranking:
            return await self.reranker.enhanced_rerank(query, items, top_k)
        return await self.reranker.rerank(query, items, top_k)

    async def query(
        self,
        query: str,
        owner_id: str | None = None,
        types: list[KnowledgeType | str] | None = None,
        file_ids: list[str] | None = None,
        entity_id: str | None = None,
        top_k: int = 10,
        use_reranking: bool = True,
        enhanced_reranking: bool = False,
    ) -> dict[str, Any]:
        """Run a query and format the response.

        Returns:
            `{query, results, total, metadata}` where each result carries a
            1-based `rank` and type-specific fields
        """
        items = await self.retrieve(
            query,
            owner_id=owner_id,
            types=types,
            file_ids=file_ids,
            entity_id=entity_id,
            top_k=top_k,
            use_reranking=use_reranking,
            enhanced_reranking=enhanced_reranking,
        )
        results = self.format_results(items)
        logger.info(f"[RAGService] Query returned {len(results)} results")
        return {
            "query": query,
            "results": results,
            "total": len(results),
            "metadata": {
                "retrieval_count": len(items),
                "reranked": any(item.reranked for item in items),
                "enhanced_reranking": use_reranking and enhanced_reranking,
                "entity_id": entity_id,
            },
        }

    @staticmethod
    def format_results(items: list[RetrievedItem]) -> list[dict[str, Any]]:
        return [format_result(rank, item) for rank, item in enumerate(items, start=1)]

    # ============================================
    # Knowledge management
    # ============================================

    async def add_knowledge(
        self, owner_id: str | None, knowledge_type: KnowledgeType | str, data: dict[str, Any]
    ) -> dict[str, Any]:
        return await self.knowledge.add_knowledge(owner_id, knowledge_type, data)

    async def add_knowledge_batch(
        self, owner_id: str | None, entries: list[dict[str, Any]]
    ) -> dict[str, Any]:
        created = await self.knowledge.add_knowledge_entries(owner_id, entries)
        return {
            "created": created,
            "total": len(entries),
            "succeeded": len(created),
            "failed": len(entries) - len(created),
        }

    async def update_knowledge(
        self,
        entry_id: str,
        owner_id: str | None,
        knowledge_type: KnowledgeType | str,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        knowledge_type = coerce_type(knowledge_type)
        if knowledge_type not in UPDATABLE_TYPES:
            raise UnsupportedKnowledgeTypeError(f"{knowledge_type.value} (update)")
        return await self.knowledge.update_knowledge(entry_id, owner_id, knowledge_type, changes)

    async def delete_knowledge(self, entry_id: str, owner_id: str | None = None) -> bool:
        return await self.knowledge.delete_knowledge_entry(entry_id, owner_id)

    async def get_knowledge(
        self, entry_id: str, owner_id: str | None = None, include_children: bool = True
    ) -> dict[str, Any]:
        """Raises EntryNotFoundError when the entry is missing."""
        entry = await self.knowledge.get_knowledge_entry(entry_id, owner_id, include_children)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    async def get_knowledge_list(
        self,
        owner_id: str | None = None,
        knowledge_type: KnowledgeType | str | None = None,
        entity_id: str | None = None,
        include_children: bool = False,
        limit: int = 100,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        return await self.knowledge.get_knowledge_entries(
            owner_id=owner_id,
            knowledge_type=knowledge_type,
            entity_id=entity_id,
            include_children=include_children,
            limit=limit,
            skip=skip,
        )

    # ============================================
    # Documents
    # ============================================

    async def ingest_file(
        self,
        source: bytes | str | Path,
        owner_id: str | None = None,
        entity_id: str | None = None,
        filename: str | None = None,
        mime_type: str | None = None,
        file_id: str | None = None,
        force: bool = False,
    ) -> tuple[ProcessingResult, dict[str, Any] | None]:
        """Index a document and record it as a `file` entry.

        The entry is only recorded when at least one chunk was stored.
        Re-ingesting a `file_id` refreshes its entry; unchanged content is
        not re-embedded unless `force` is set.
        """
        file_id = file_id or str(uuid4())
        result = await self.processor.index_file(
            source,
            file_id,
            owner_id=owner_id,
            entity_id=entity_id,
            filename=filename,
            mime_type=mime_type,
            force=force,
        )
        if not result.success:
            logger.warning(f"[RAGService] Ingestion of {filename or file_id} failed: {result.error}")
            return result, None

        entry = await self.knowledge.add_file_entry(
            owner_id,
            file_id,
            filename=filename or (Path(source).name if isinstance(source, (str, Path)) else None),
            entity_id=entity_id,
            metadata={
                "chunk_count": result.chunk_count,
                "mime_type": mime_type,
                "content_hash": result.content_hash,
            },
        )
        return result, entry


class KnowledgeEngine:
    """Composition root: builds every component and owns its lifecycle."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        reranker: Reranker,
    ):
        self.settings = settings
        self.database = database
        self.vector_store = vector_store
        self.embedder = embedder
        self.reranker = reranker

        self.knowledge = KnowledgeBaseService(
            database,
            vector_store,
            embedder,
            qa_duplicate_threshold=settings.qa_duplicate_threshold,
        )
        self.retriever = Retriever(
            database,
            vector_store,
            embedder,
            min_score=settings.retrieval_min_score,
            file_min_score=settings.file_min_score,
            kb_ratio=settings.retrieval_kb_ratio,
            local_fallback=settings.retrieval_local_fallback,
        )
        self.processor = DocumentProcessor.from_settings(settings, vector_store, embedder)
        self.rag = RAGService(
            self.knowledge,
            self.retriever,
            self.reranker,
            self.processor,
            default_top_k=settings.retrieval_top_k,
        )
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "KnowledgeEngine":
        return cls(
            settings,
            database=Database.from_settings(settings),
            vector_store=VectorStore.from_settings(settings),
            embedder=EmbeddingProvider.from_settings(
                settings, LocalModelResolver(settings.model_cache_dir)
            ),
            reranker=Reranker.from_settings(
                settings, LocalModelResolver(settings.model_cache_dir)
            ),
        )

    @property
    def started(self) -> bool:
        return self._started

    async def init(self) -> None:
        """Connect stores, then warm up models.

        Store failures raise; model warmup failures only degrade.
        """
        logger.info(f"[RAGService] Starting {self.settings.app_name} v{self.settings.app_version}")
        await self.database.init()
        await self.vector_store.init()
        await self.embedder.init()
        await self.reranker.init()
        self._started = True
        logger.info("[RAGService] Knowledge engine ready")

    async def shutdown(self) -> None:
        self._started = False
        await self.reranker.shutdown()
        await self.embedder.shutdown()
        await self.vector_store.shutdown()
        await self.database.shutdown()
        logger.info("[RAGService] Knowledge engine stopped")
