"""RAG Retriever - hybrid search over the knowledge base and document chunks.

Embeds the query once, then searches knowledge collections and file chunks
concurrently. A failing branch contributes nothing instead of failing the
query, and a query that cannot be embedded returns no results.
"""

import asyncio
import logging
import math
import os
from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np

from knowledge_engine.core.errors import ValidationError
from knowledge_engine.db.database import Database
from knowledge_engine.db.models import MANAGED_TYPES, KnowledgeEntry, KnowledgeType
from knowledge_engine.db.repository import KnowledgeEntryRepository
from knowledge_engine.rag.embedder import EmbeddingProvider
from knowledge_engine.rag.vector_store import VectorStore, coerce_type, normalize_entity_id

logger = logging.getLogger(__name__)

# Scoped file search falls back to cross-file search below this share of its budget
FILE_FALLBACK_RATIO = 0.5


@dataclass
class RetrievedItem:
    """A ranked snippet from the knowledge base or a document."""

    id: str
    type: str
    title: str
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    original_score: float | None = None
    rerank_score: float | None = None
    reranked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def budget(top_k: int, share: float) -> int:
    """ceil(top_k * share), immune to float noise such as 10 * 0.7."""
    return math.ceil(round(top_k * share, 9))


def cosine_similarities(query: list[float], matrix: list[list[float]]) -> np.ndarray:
    """Cosine similarity of `query` against each row; zero-norm rows score 0."""
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    return np.divide(m @ q, norms, out=np.zeros(len(m)), where=norms > 0)


class Retriever:
    """Hybrid retrieval with data-source isolation.

    Knowledge-base hits are joined with their durable records so that
    entries deleted after their vector was written never surface.
    """

    def __init__(
        self,
        database: Database,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        min_score: float = 0.5,
        file_min_score: float = 0.5,
        kb_ratio: float = 0.7,
        local_fallback: bool = True,
    ):
        self.database = database
        self.vector_store = vector_store
        self.embedder = embedder
        self.min_score = min_score
        self.file_min_score = file_min_score
        self.kb_ratio = kb_ratio
        self.local_fallback = local_fallback

    # ============================================
    # Knowledge base
    # ============================================

    async def retrieve_knowledge(
        self,
        query: str,
        types: list[KnowledgeType | str] | None = None,
        entity_id: str | None = None,
        top_k: int = 10,
        min_score: float | None = None,
        query_embedding: list[float] | None = None,
    ) -> list[RetrievedItem]:
        """Retrieve knowledge entries similar to a query.

        Args:
            query: Search text
            types: Knowledge types to search; None means all
            entity_id: Restrict to this data source
            top_k: Maximum results
            min_score: Minimum similarity (defaults to configured value)
            query_embedding: Precomputed query vector

        Returns:
            Entries sorted by score, highest first
        """
        min_score = self.min_score if min_score is None else min_score
        entity_id = normalize_entity_id(entity_id)
        search_types = self._knowledge_types(types)
        if not search_types:
            return []

        embedding = query_embedding or await self.embedder.embed_query(query)
        if embedding is None:
            logger.warning("[Retriever] Query embedding failed, no knowledge results")
            return []

        try:
            hits = await self.vector_store.search_similar(
                embedding,
                types=search_types,
                entity_id=entity_id,
                top_k=top_k * 2,
                min_score=min_score,
            )
        except Exception as e:
            if not self.local_fallback:
                raise
            logger.warning(f"[Retriever] Vector search failed, scoring in-process: {e}")
            return await self._local_search(embedding, search_types, entity_id, top_k, min_score)

        if not hits:
            return []

        async with self.database.session() as db:
            entries = await KnowledgeEntryRepository(db).get_many([h["id"] for h in hits if h["id"]])

        results = []
        for hit in hits:
            entry = entries.get(hit["id"])
            if entry is None:
                continue
            if entity_id and normalize_entity_id(entry.entity_id) != entity_id:
                logger.warning(
                    f"[Retriever] Dropping {entry.id}: entity {entry.entity_id} != {entity_id}"
                )
                continue
            results.append(self._from_entry(entry, hit["score"]))

        logger.info(f"[Retriever] Knowledge search returned {len(results[:top_k])} results")
        return results[:top_k]

    async def _local_search(
        self,
        embedding: list[float],
        types: list[KnowledgeType],
        entity_id: str | None,
        top_k: int,
        min_score: float,
    ) -> list[RetrievedItem]:
        async with self.database.session() as db:
            entries = await KnowledgeEntryRepository(db).list_with_embeddings(
                types, entity_id=entity_id
            )

        candidates = [e for e in entries if e.embedding and len(e.embedding) == len(embedding)]
        if not candidates:
            return []

        scores = cosine_similarities(embedding, [e.embedding for e in candidates])
        ranked = sorted(
            (
                self._from_entry(entry, float(score))
                for entry, score in zip(candidates, scores)
                if score >= min_score
            ),
            key=lambda item: item.score,
            reverse=True,
        )
        return ranked[:top_k]

    @staticmethod
    def _knowledge_types(types: list[KnowledgeType | str] | None) -> list[KnowledgeType]:
        if not types:
            return list(MANAGED_TYPES)
        # Files are searched by the file branch
        return [t for t in (coerce_type(t) for t in types) if t != KnowledgeType.FILE]

    @staticmethod
    def _from_entry(entry: KnowledgeEntry, score: float) -> RetrievedItem:
        return RetrievedItem(
            id=entry.id,
            type=entry.type.value,
            title=entry.title,
            content=entry.content,
            score=score,
            metadata=dict(entry.entry_metadata or {}),
        )

    # ============================================
    # Files
    # ============================================

    async def retrieve_files(
        self,
        query: str,
        file_ids: list[str] | None = None,
        entity_id: str | None = None,
        top_k: int = 3,
        query_embedding: list[float] | None = None,
    ) -> list[RetrievedItem]:
        """Retrieve document chunks.

        With `file_ids`, each file is searched on its own first. If that
        yields fewer than half of `top_k`, a cross-file search tops the list
        up with chunks from other files. Without `file_ids` only the
        cross-file search runs.
        """
        embedding = query_embedding or await self.embedder.embed_query(query)
        if embedding is None:
            logger.warning("[Retriever] Query embedding failed, no file results")
            return []
        entity_id = normalize_entity_id(entity_id)

        if not file_ids:
            return await self._search_files(embedding, None, entity_id, top_k)

        per_file = math.ceil(top_k / len(file_ids))
        outcomes = await asyncio.gather(
            *(self._search_files(embedding, fid, entity_id, per_file) for fid in file_ids),
            return_exceptions=True,
        )
        scoped: list[RetrievedItem] = []
        for file_id, outcome in zip(file_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"[Retriever] Search in file {file_id} failed: {outcome}")
            else:
                scoped.extend(outcome)
        scoped.sort(key=lambda item: item.score, reverse=True)

        if len(scoped) >= budget(top_k, FILE_FALLBACK_RATIO):
            return scoped[:top_k]

        logger.info(f"[Retriever] Scoped file search found {len(scoped)}, adding cross-file results")
        seen = {item.metadata.get("file_id") for item in scoped}
        try:
            cross = await self._search_files(embedding, None, entity_id, top_k)
        except Exception as e:
            logger.warning(f"[Retriever] Cross-file search failed: {e}")
            return scoped[:top_k]

        extra = [item for item in cross if item.metadata.get("file_id") not in seen]
        merged = sorted(scoped + extra, key=lambda item: item.score, reverse=True)
        return merged[:top_k]

    async def _search_files(
        self,
        embedding: list[float],
        file_id: str | None,
        entity_id: str | None,
        top_k: int,
    ) -> list[RetrievedItem]:
        hits = await self.vector_store.search_file_vectors(
            embedding,
            file_id=file_id,
            entity_id=entity_id,
            top_k=top_k,
            min_score=self.file_min_score,
        )
        items = []
        for hit in hits:
            meta = hit.get("metadata") or {}
            source = meta.get("source")
            filename = meta.get("filename") or (os.path.basename(source) if source else None)
            items.append(
                RetrievedItem(
                    id=hit["id"],
                    type=KnowledgeType.FILE.value,
                    title=filename or "File",
                    content=hit["content"],
                    score=hit["score"],
                    metadata={
                        "file_id": hit["file_id"],
                        "filename": filename,
                        "chunk_index": hit["chunk_index"],
                        "page": hit.get("page"),
                        "entity_id": hit.get("entity_id") or entity_id,
                    },
                )
            )
        return items

    # ============================================
    # Hybrid
    # ============================================

    async def hybrid_retrieve(
        self,
        query: str,
        types: list[KnowledgeType | str] | None = None,
        file_ids: list[str] | None = None,
        entity_id: str | None = None,
        top_k: int = 10,
    ) -> list[RetrievedItem]:
        """Blend knowledge-base and document results.

        The knowledge base gets `kb_ratio` of `top_k` and documents the rest
        (rounded up each). Results are merged by score and cut to `top_k`.

        Like every other failure on the query path, invalid input (a
        non-positive `top_k`, an unknown type) yields no results instead of
        raising.
        """
        if top_k <= 0:
            logger.warning(f"[Retriever] Invalid top_k {top_k}, returning no results")
            return []
        if not query or not query.strip():
            return []
        try:
            types = [coerce_type(t) for t in types] if types else None
        except ValidationError as e:
            logger.warning(f"[Retriever] {e}, returning no results")
            return []

        embedding = await self.embedder.embed_query(query)
        if embedding is None:
            logger.warning("[Retriever] Query embedding failed, returning no results")
            return []

        kb_k = budget(top_k, self.kb_ratio)
        file_k = budget(top_k, 1 - self.kb_ratio)
        kb_outcome, file_outcome = await asyncio.gather(
            self.retrieve_knowledge(
                query, types=types, entity_id=entity_id, top_k=kb_k, query_embedding=embedding
            ),
            self.retrieve_files(
                query, file_ids=file_ids, entity_id=entity_id, top_k=file_k, query_embedding=embedding
            ),
            return_exceptions=True,
        )

        if isinstance(kb_outcome, BaseException):
            logger.warning(f"[Retriever] Knowledge branch failed: {kb_outcome}")
            kb_outcome = []
        if isinstance(file_outcome, BaseException):
            logger.warning(f"[Retriever] File branch failed: {file_outcome}")
            file_outcome = []

        merged = sorted(kb_outcome + file_outcome, key=lambda item: item.score, reverse=True)
        logger.info(
            f"[Retriever] Hybrid search: {len(kb_outcome)} knowledge, "
            f"{len(file_outcome)} file, returning {min(len(merged), top_k)}"
        )
        return merged[:top_k]
