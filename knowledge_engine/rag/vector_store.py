"""Qdrant vector store client.

Manages one collection per knowledge type plus a collection of document
chunks (`file_vectors`). Every collection enforces the same embedding
dimension at write time.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import NAMESPACE_DNS, uuid5

import httpx
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.http.models import Distance, PayloadSchemaType, VectorParams

from knowledge_engine.core.config import Settings
from knowledge_engine.core.errors import (
    StoreConnectionError,
    UnsupportedKnowledgeTypeError,
    ValidationError,
    VectorDimensionError,
)
from knowledge_engine.core.lifecycle import InitOnce
from knowledge_engine.db.models import MANAGED_TYPES, KnowledgeType
from knowledge_engine.rag.chunking import Chunk

logger = logging.getLogger(__name__)

FILE_COLLECTION_SUFFIX = "file_vectors"
UPSERT_BATCH_SIZE = 100

_TRANSIENT_ERRORS = (ResponseHandlingException, UnexpectedResponse, httpx.HTTPError, OSError)


def normalize_entity_id(value: Any) -> str | None:
    """Canonical form of an entity isolation key.

    Unwraps values that picked up extra quotes in a serialization layer,
    e.g. '"abc"' -> 'abc'.
    """
    if value is None:
        return None
    text = str(value).strip()
    while len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        text = text[1:-1].strip()
    return text or None


def strip_nul(value: Any) -> Any:
    """Remove NUL characters from every string in a JSON-like value."""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, dict):
        return {k: strip_nul(v) for k, v in value.items()}
    if isinstance(value, list):
        return [strip_nul(v) for v in value]
    return value


def entry_point_id(entry_id: str) -> str:
    """Deterministic point ID so re-storing an entry overwrites it."""
    return str(uuid5(NAMESPACE_DNS, entry_id))


def chunk_point_id(file_id: str, chunk_index: int) -> str:
    return str(uuid5(NAMESPACE_DNS, f"{file_id}:{chunk_index}"))


def coerce_type(value: KnowledgeType | str) -> KnowledgeType:
    if isinstance(value, KnowledgeType):
        return value
    try:
        return KnowledgeType(value)
    except ValueError:
        raise UnsupportedKnowledgeTypeError(value)


class VectorStore:
    """Qdrant vector store for knowledge embeddings.

    Collections:
    - {prefix}_{type} for each managed knowledge type
    - {prefix}_file_vectors for document chunks

    Payload: entry_id / file_id, owner_id, entity_id, content, metadata
    """

    def __init__(
        self,
        client: AsyncQdrantClient,
        embedding_dim: int,
        collection_prefix: str = "knowledge",
        hnsw_m: int = 16,
        hnsw_ef_construct: int = 100,
        connect_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.client = client
        self.embedding_dim = embedding_dim
        self.collection_prefix = collection_prefix
        self.hnsw_m = hnsw_m
        self.hnsw_ef_construct = hnsw_ef_construct
        self.connect_retries = connect_retries
        self.retry_delay = retry_delay
        self._bootstrap = InitOnce(self._bootstrap_collections)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: AsyncQdrantClient | None = None,
    ) -> "VectorStore":
        if client is None:
            client = AsyncQdrantClient(
                url=settings.qdrant_url,
                api_key=settings.qdrant_api_key,
                timeout=settings.qdrant_timeout,
            )
        return cls(
            client,
            embedding_dim=settings.embedding_dimensions,
            collection_prefix=settings.qdrant_collection_prefix,
            hnsw_m=settings.qdrant_hnsw_m,
            hnsw_ef_construct=settings.qdrant_hnsw_ef_construct,
            connect_retries=settings.connect_retries,
            retry_delay=settings.connect_retry_delay,
        )

    # ============================================
    # Collections
    # ============================================

    def collection_name(self, knowledge_type: KnowledgeType | str) -> str:
        knowledge_type = coerce_type(knowledge_type)
        if knowledge_type == KnowledgeType.FILE:
            return self.file_collection
        return f"{self.collection_prefix}_{knowledge_type.value}"

    @property
    def file_collection(self) -> str:
        return f"{self.collection_prefix}_{FILE_COLLECTION_SUFFIX}"

    def all_collections(self) -> list[str]:
        return [self.collection_name(t) for t in MANAGED_TYPES] + [self.file_collection]

    async def init(self) -> None:
        """Create missing collections. Safe to call concurrently."""
        await self._bootstrap.get()

    async def _bootstrap_collections(self) -> None:
        for attempt in range(1, self.connect_retries + 1):
            try:
                for name in self.all_collections():
                    await self.create_collection(name)
                logger.info(f"[VectorStore] Collections ready (dim={self.embedding_dim})")
                return
            except _TRANSIENT_ERRORS as e:
                logger.warning(
                    f"[VectorStore] Bootstrap attempt {attempt}/{self.connect_retries} failed: {e}"
                )
                if attempt == self.connect_retries:
                    raise StoreConnectionError(
                        f"Qdrant unreachable after {self.connect_retries} attempts"
                    ) from e
                await asyncio.sleep(self.retry_delay)

    async def create_collection(self, collection_name: str) -> bool:
        """Create a collection with cosine distance and payload indexes.

        Returns:
            True if created, False if it already exists

        Raises:
            VectorDimensionError: If an existing collection has another dimension
        """
        if await self.client.collection_exists(collection_name):
            info = await self.client.get_collection(collection_name)
            vectors = info.config.params.vectors
            size = getattr(vectors, "size", None)
            if size is not None and size != self.embedding_dim:
                logger.error(
                    f"[VectorStore] Collection '{collection_name}' has dim {size}, "
                    f"configured dim is {self.embedding_dim}"
                )
                raise VectorDimensionError(size, self.embedding_dim)
            return False

        await self.client.create_collection(
            collection_name=collection_name,
            vectors_config=VectorParams(
                size=self.embedding_dim,
                distance=Distance.COSINE,
            ),
            # Store large text payloads on disk to save RAM
            on_disk_payload=True,
            # m / ef_construct trade recall against latency and memory
            hnsw_config=qdrant_models.HnswConfigDiff(
                m=self.hnsw_m,
                ef_construct=self.hnsw_ef_construct,
                payload_m=16,
            ),
        )

        keyword_fields = ["owner_id", "entity_id"]
        if collection_name == self.file_collection:
            keyword_fields.append("file_id")
        else:
            keyword_fields.append("entry_id")

        for field_name in keyword_fields:
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=PayloadSchemaType.KEYWORD,
            )

        logger.info(f"[VectorStore] Created collection '{collection_name}'")
        return True

    async def recreate_collections(self, names: list[str]) -> None:
        """Drop collections and create them again at the configured dimension.

        All points in them are lost.
        """
        self._bootstrap.reset()
        for name in names:
            await self.client.delete_collection(name)
            logger.warning(f"[VectorStore] Dropped collection '{name}'")
            await self.create_collection(name)

    def _check_embedding(self, embedding: list[float] | None) -> list[float]:
        if not embedding:
            raise ValidationError("An embedding is required to store a vector")
        if len(embedding) != self.embedding_dim:
            raise VectorDimensionError(len(embedding), self.embedding_dim)
        return [float(x) for x in embedding]

    # ============================================
    # Knowledge vectors
    # ============================================

    async def store_vector(
        self,
        owner_id: str | None,
        knowledge_type: KnowledgeType | str,
        entry_id: str,
        content: str,
        embedding: list[float],
        metadata: dict | None = None,
    ) -> str:
        """Insert or replace the vector mirror of a knowledge entry.

        All validation happens before the write.

        Returns:
            Point ID
        """
        knowledge_type = coerce_type(knowledge_type)
        if knowledge_type not in MANAGED_TYPES:
            raise UnsupportedKnowledgeTypeError(knowledge_type)
        if not entry_id or not str(entry_id).strip():
            raise ValidationError("entry_id must be a non-empty string")
        vector = self._check_embedding(embedding)

        collection_name = self.collection_name(knowledge_type)
        point_id = entry_point_id(entry_id)
        clean_metadata = strip_nul(dict(metadata or {}))
        entity_id = normalize_entity_id(clean_metadata.get("entity_id"))
        now = datetime.now(UTC).isoformat()

        existing = await self.client.retrieve(
            collection_name=collection_name,
            ids=[point_id],
            with_payload=True,
            with_vectors=False,
        )
        created_at = existing[0].payload.get("created_at", now) if existing else now

        await self.client.upsert(
            collection_name=collection_name,
            points=[
                qdrant_models.PointStruct(
                    id=point_id,
                    vector=vector,
                    payload={
                        "entry_id": entry_id,
                        "owner_id": owner_id,
                        "entity_id": entity_id,
                        "type": knowledge_type.value,
                        "content": strip_nul(content or ""),
                        "metadata": clean_metadata,
                        "created_at": created_at,
                        "updated_at": now,
                    },
                )
            ],
        )
        logger.debug(
            f"[VectorStore] Stored vector for entry {entry_id} in '{collection_name}'"
        )
        return point_id

    async def search_similar(
        self,
        query_embedding: list[float],
        types: list[KnowledgeType | str] | None = None,
        entity_id: str | None = None,
        top_k: int = 10,
        min_score: float = 0.5,
    ) -> list[dict]:
        """Search knowledge collections by cosine similarity.

        Args:
            query_embedding: Query vector
            types: Knowledge types to search; empty or None means all
            entity_id: Restrict to this data source
            top_k: Maximum results overall (and per type)
            min_score: Minimum similarity score

        Returns:
            Matches sorted by score, highest first
        """
        vector = self._check_embedding(query_embedding)
        search_types = [coerce_type(t) for t in types] if types else list(MANAGED_TYPES)
        for knowledge_type in search_types:
            if knowledge_type not in MANAGED_TYPES:
                raise UnsupportedKnowledgeTypeError(knowledge_type)
        entity_id = normalize_entity_id(entity_id)

        per_type = await asyncio.gather(
            *(
                self._search_type(t, vector, entity_id, top_k, min_score)
                for t in search_types
            ),
            return_exceptions=True,
        )

        # One failing type must not hide the others; only total failure raises
        failures = [r for r in per_type if isinstance(r, BaseException)]
        if failures and len(failures) == len(per_type):
            raise failures[0]
        for knowledge_type, outcome in zip(search_types, per_type):
            if isinstance(outcome, BaseException):
                logger.warning(
                    f"[VectorStore] Search in '{self.collection_name(knowledge_type)}' failed: {outcome}"
                )

        results = [
            hit for hits in per_type if not isinstance(hits, BaseException) for hit in hits
        ]
        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:top_k]

    async def _search_type(
        self,
        knowledge_type: KnowledgeType,
        vector: list[float],
        entity_id: str | None,
        top_k: int,
        min_score: float,
    ) -> list[dict]:
        points = await self._query(
            self.collection_name(knowledge_type), vector, top_k, min_score, entity_id=entity_id
        )

        return [
            {
                "id": point.payload.get("entry_id"),
                "type": point.payload.get("type", knowledge_type.value),
                "content": point.payload.get("content", ""),
                "score": point.score,
                "owner_id": point.payload.get("owner_id"),
                "entity_id": point.payload.get("entity_id"),
                "metadata": point.payload.get("metadata", {}),
            }
            for point in points
        ]

    async def _query(
        self,
        collection_name: str,
        vector: list[float],
        limit: int,
        min_score: float,
        **match: str | None,
    ) -> list[qdrant_models.ScoredPoint]:
        conditions = [
            qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchValue(value=value))
            for key, value in match.items()
            if value is not None
        ]
        query_filter = qdrant_models.Filter(must=conditions) if conditions else None

        response = await self.client.query_points(
            collection_name=collection_name,
            query=vector,
            limit=limit,
            query_filter=query_filter,
            score_threshold=min_score,
            with_payload=True,
        )
        return [point for point in response.points if point.score >= min_score]

    async def delete_vector(
        self,
        entry_id: str,
        knowledge_type: KnowledgeType | str | None = None,
    ) -> int:
        """Delete an entry's vector from one type's collection, or from all.

        Returns:
            Number of collections that held the vector
        """
        point_id = entry_point_id(entry_id)
        if knowledge_type is not None:
            collections = [self.collection_name(knowledge_type)]
        else:
            collections = [self.collection_name(t) for t in MANAGED_TYPES]

        deleted = 0
        for collection_name in collections:
            existing = await self.client.retrieve(
                collection_name=collection_name,
                ids=[point_id],
                with_payload=False,
                with_vectors=False,
            )
            if not existing:
                continue
            await self.client.delete(
                collection_name=collection_name,
                points_selector=qdrant_models.PointIdsList(points=[point_id]),
            )
            deleted += 1

        logger.debug(f"[VectorStore] Deleted vector for entry {entry_id} from {deleted} collection(s)")
        return deleted

    # ============================================
    # File vectors
    # ============================================

    async def store_file_vectors(
        self,
        file_id: str,
        chunks: list[Chunk | dict],
        embeddings: list[list[float] | None],
        owner_id: str | None = None,
        entity_id: str | None = None,
        filename: str | None = None,
    ) -> int:
        """Replace the stored chunks of a document.

        Chunks whose embedding is missing or has the wrong dimension are
        skipped and logged; the rest are stored. New chunks are written before
        stale ones are removed, and when no chunk is valid the existing chunks
        are left untouched.

        Returns:
            Number of chunks stored
        """
        if not file_id or not str(file_id).strip():
            raise ValidationError("file_id must be a non-empty string")
        if len(chunks) != len(embeddings):
            raise ValidationError(
                f"Got {len(chunks)} chunks but {len(embeddings)} embeddings for file {file_id}"
            )

        entity_id = normalize_entity_id(entity_id)
        now = datetime.now(UTC).isoformat()
        points = []

        for i, (chunk, embedding) in enumerate(zip(chunks, embeddings, strict=True)):
            if isinstance(chunk, Chunk):
                text, chunk_metadata = chunk.text, chunk.metadata
            else:
                text, chunk_metadata = chunk.get("text", ""), chunk.get("metadata", {})

            if not embedding or len(embedding) != self.embedding_dim:
                logger.warning(
                    f"[VectorStore] Skipping chunk {i} of file {file_id}: "
                    f"embedding has {len(embedding) if embedding else 0} dims, expected {self.embedding_dim}"
                )
                continue

            chunk_index = int(chunk_metadata.get("chunk_index", i))
            metadata = strip_nul(
                {
                    **chunk_metadata,
                    "file_id": file_id,
                    "filename": filename,
                    "entity_id": entity_id,
                }
            )
            points.append(
                qdrant_models.PointStruct(
                    id=chunk_point_id(file_id, chunk_index),
                    vector=[float(x) for x in embedding],
                    payload={
                        "file_id": file_id,
                        "owner_id": owner_id,
                        "entity_id": entity_id,
                        "chunk_index": chunk_index,
                        "page": chunk_metadata.get("page_start"),
                        "content": strip_nul(text),
                        "metadata": metadata,
                        "created_at": now,
                    },
                )
            )

        if not points:
            logger.warning(
                f"[VectorStore] No valid chunks to store for file {file_id}, keeping existing chunks"
            )
            return 0

        # Batch upserts to avoid timeout on large payloads
        for i in range(0, len(points), UPSERT_BATCH_SIZE):
            batch = points[i : i + UPSERT_BATCH_SIZE]
            await self.client.upsert(collection_name=self.file_collection, points=batch)

        stale = await self._delete_file_points(file_id, keep=[point.id for point in points])
        if stale:
            logger.debug(f"[VectorStore] Removed {stale} stale chunks of file {file_id}")

        logger.info(
            f"[VectorStore] Stored {len(points)}/{len(chunks)} chunks for file {file_id}"
        )
        return len(points)

    async def search_file_vectors(
        self,
        query_embedding: list[float],
        file_id: str | None = None,
        entity_id: str | None = None,
        top_k: int = 10,
        min_score: float = 0.5,
    ) -> list[dict]:
        """Search document chunks, within one file or across all files."""
        vector = self._check_embedding(query_embedding)
        points = await self._query(
            self.file_collection,
            vector,
            top_k,
            min_score,
            file_id=file_id,
            entity_id=normalize_entity_id(entity_id),
        )
        return [
            {
                "id": str(point.id),
                "file_id": point.payload.get("file_id"),
                "chunk_index": point.payload.get("chunk_index"),
                "page": point.payload.get("page"),
                "content": point.payload.get("content", ""),
                "score": point.score,
                "entity_id": point.payload.get("entity_id"),
                "metadata": point.payload.get("metadata", {}),
            }
            for point in points
        ]

    async def delete_file_vectors(self, file_id: str) -> int:
        """Delete all chunks for a file.

        Returns:
            Number of chunks deleted
        """
        return await self._delete_file_points(file_id)

    async def get_file_content_hash(self, file_id: str) -> tuple[str | None, int]:
        """Return the content hash the file's chunks were built from, and their count."""
        file_filter = self._file_filter(file_id)
        count = (
            await self.client.count(collection_name=self.file_collection, count_filter=file_filter)
        ).count
        if not count:
            return None, 0
        points, _ = await self.client.scroll(
            collection_name=self.file_collection,
            scroll_filter=file_filter,
            limit=1,
            with_payload=True,
            with_vectors=False,
        )
        if not points:
            return None, count
        metadata = (points[0].payload or {}).get("metadata") or {}
        return metadata.get("content_hash"), count

    @staticmethod
    def _file_filter(file_id: str, keep: list[str] | None = None) -> qdrant_models.Filter:
        return qdrant_models.Filter(
            must=[
                qdrant_models.FieldCondition(
                    key="file_id",
                    match=qdrant_models.MatchValue(value=file_id),
                )
            ],
            must_not=[qdrant_models.HasIdCondition(has_id=keep)] if keep else None,
        )

    async def _delete_file_points(self, file_id: str, keep: list[str] | None = None) -> int:
        """Delete a file's chunks, except the point ids in `keep`."""
        file_filter = self._file_filter(file_id, keep)

        # Get count before deletion
        count_before = (
            await self.client.count(collection_name=self.file_collection, count_filter=file_filter)
        ).count
        if count_before:
            await self.client.delete(
                collection_name=self.file_collection,
                points_selector=qdrant_models.FilterSelector(filter=file_filter),
            )
        return count_before

    # ============================================
    # Diagnostics
    # ============================================

    async def count(self, knowledge_type: KnowledgeType | str) -> int:
        result = await self.client.count(collection_name=self.collection_name(knowledge_type))
        return result.count

    async def get_collection_info(self) -> dict[str, dict | None]:
        """Get per-collection statistics."""
        info: dict[str, dict | None] = {}
        for name in self.all_collections():
            try:
                collection = await self.client.get_collection(name)
                info[name] = {
                    "points_count": collection.points_count,
                    "status": collection.status.value if collection.status else None,
                    "dimension": getattr(collection.config.params.vectors, "size", None),
                }
            except Exception as e:
                logger.warning(f"[VectorStore] Could not read collection '{name}': {e}")
                info[name] = None
        return info

    async def ping(self) -> bool:
        try:
            await self.client.get_collections()
            return True
        except _TRANSIENT_ERRORS as e:
            logger.warning(f"[VectorStore] Ping failed: {e}")
            return False

    async def shutdown(self) -> None:
        await self.client.close()
        self._bootstrap.reset()
