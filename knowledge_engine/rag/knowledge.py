"""Knowledge base service.

Manages the lifecycle of knowledge entries: semantic models, QA pairs,
synonyms and business knowledge. Every entry follows the same flow:

    validate payload -> embed -> persist durable record -> mirror to vector store

The durable record is the source of truth. Embedding is best-effort and the
vector-store mirror is best-effort; neither failure prevents a save.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from knowledge_engine.core.errors import (
    EntryNotFoundError,
    UnsupportedKnowledgeTypeError,
    ValidationError,
)
from knowledge_engine.db.database import Database
from knowledge_engine.db.models import KnowledgeEntry, KnowledgeType
from knowledge_engine.db.repository import KnowledgeEntryRepository
from knowledge_engine.rag.embedder import EmbeddingProvider
from knowledge_engine.rag.semantic_description import generate_semantic_model_description
from knowledge_engine.rag.vector_store import VectorStore, coerce_type, normalize_entity_id

logger = logging.getLogger(__name__)

QA_TITLE_LENGTH = 50


# ============================================
# Payloads
# ============================================


class KnowledgePayload(BaseModel):
    """Fields shared by every knowledge type."""

    entity_id: str | None = None
    parent_id: str | None = None

    @field_validator("entity_id", mode="before")
    @classmethod
    def normalize_entity(cls, value: Any) -> str | None:
        return normalize_entity_id(value)


class SemanticModelPayload(KnowledgePayload):
    database_name: str = Field(min_length=1)
    table_name: str = ""
    content: str
    semantic_model_id: str | None = None
    is_database_level: bool = False
    semantic_description: str | None = None
    title: str | None = None
    model_type: str | None = None

    @model_validator(mode="after")
    def default_model_id(self) -> "SemanticModelPayload":
        if not self.semantic_model_id:
            self.semantic_model_id = self.table_name or self.database_name
        return self


class DatabaseSemanticModelPayload(BaseModel):
    """A database-level semantic model with one child model per table."""

    database_name: str = Field(min_length=1)
    semantic_models: list[dict[str, Any]] = Field(min_length=1)
    database_content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class QAPairPayload(KnowledgePayload):
    question: str
    answer: str
    skip_duplicate_check: bool = False

    @field_validator("question")
    @classmethod
    def strip_question(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("question must not be empty")
        return value


class SynonymPayload(KnowledgePayload):
    noun: str = Field(min_length=1)
    synonyms: list[str] = Field(default_factory=list)


class BusinessKnowledgePayload(KnowledgePayload):
    title: str | None = None
    content: str | None = None
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    file_id: str | None = None
    filename: str | None = None

    @model_validator(mode="after")
    def check_title(self) -> "BusinessKnowledgePayload":
        if not self.title:
            self.title = self.filename
        if not self.title:
            raise ValueError("title or filename is required")
        return self


class QAPairUpdate(BaseModel):
    question: str | None = None
    answer: str | None = None


class SynonymUpdate(BaseModel):
    noun: str | None = None
    synonyms: list[str] | None = None


class BusinessKnowledgeUpdate(BaseModel):
    title: str | None = None
    content: str | None = None
    category: str | None = None
    tags: list[str] | None = None
    file_id: str | None = None
    filename: str | None = None


def parse_payload(model: type[BaseModel], data: dict[str, Any] | BaseModel) -> BaseModel:
    """Validate raw input into a payload model.

    Raises:
        ValidationError: If the data does not fit the model
    """
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


# ============================================
# Handlers
# ============================================


class KnowledgeHandler(ABC):
    """Derives stored fields from one knowledge type's payload."""

    knowledge_type: ClassVar[KnowledgeType]
    payload_model: ClassVar[type[KnowledgePayload]]
    update_model: ClassVar[type[BaseModel] | None] = None

    @abstractmethod
    def title(self, payload) -> str: ...

    @abstractmethod
    def content(self, payload) -> str: ...

    @abstractmethod
    def metadata(self, payload) -> dict[str, Any]: ...

    def embedding_text(self, payload) -> str | None:
        """Text to embed; None skips embedding."""
        return self.content(payload)

    def vector_metadata(self, payload, entry: KnowledgeEntry) -> dict[str, Any]:
        """Metadata mirrored to the vector store."""
        return self.metadata(payload)

    def should_mirror(self, payload) -> bool:
        return True

    def payload_from_entry(self, entry: KnowledgeEntry) -> KnowledgePayload:
        """Rebuild the payload a stored entry was created from."""
        raise UnsupportedKnowledgeTypeError(f"{self.knowledge_type.value} (update)")


class SemanticModelHandler(KnowledgeHandler):
    knowledge_type = KnowledgeType.SEMANTIC_MODEL
    payload_model = SemanticModelPayload

    def title(self, payload: SemanticModelPayload) -> str:
        if payload.title:
            return payload.title
        if payload.is_database_level:
            return f"Database semantic model: {payload.database_name}"
        return f"Semantic model: {payload.database_name}.{payload.table_name}"

    def content(self, payload: SemanticModelPayload) -> str:
        return payload.content

    def metadata(self, payload: SemanticModelPayload) -> dict[str, Any]:
        return {
            "semantic_model_id": payload.semantic_model_id,
            "database_name": payload.database_name,
            "table_name": payload.table_name,
            "entity_id": payload.entity_id,
            "is_database_level": payload.is_database_level,
            "semantic_description": payload.semantic_description,
            "model_type": payload.model_type,
        }

    def vector_metadata(self, payload: SemanticModelPayload, entry: KnowledgeEntry) -> dict[str, Any]:
        # The description is for display and stays out of retrieval
        metadata = self.metadata(payload)
        metadata.pop("semantic_description")
        metadata["parent_id"] = entry.parent_id
        return metadata


class QAPairHandler(KnowledgeHandler):
    knowledge_type = KnowledgeType.QA_PAIR
    payload_model = QAPairPayload
    update_model = QAPairUpdate

    def title(self, payload: QAPairPayload) -> str:
        question = payload.question
        suffix = "..." if len(question) > QA_TITLE_LENGTH else ""
        return f"QA: {question[:QA_TITLE_LENGTH]}{suffix}"

    def content(self, payload: QAPairPayload) -> str:
        return f"Question: {payload.question}\nAnswer: {payload.answer}"

    def embedding_text(self, payload: QAPairPayload) -> str:
        return payload.question

    def metadata(self, payload: QAPairPayload) -> dict[str, Any]:
        return {
            "question": payload.question,
            "answer": payload.answer,
            "entity_id": payload.entity_id,
        }

    def payload_from_entry(self, entry: KnowledgeEntry) -> QAPairPayload:
        meta = entry.entry_metadata or {}
        return QAPairPayload(
            question=meta.get("question") or entry.title,
            answer=meta.get("answer") or "",
            entity_id=meta.get("entity_id"),
            parent_id=entry.parent_id,
        )


class SynonymHandler(KnowledgeHandler):
    knowledge_type = KnowledgeType.SYNONYM
    payload_model = SynonymPayload
    update_model = SynonymUpdate

    def title(self, payload: SynonymPayload) -> str:
        return f"Synonym: {payload.noun}"

    def content(self, payload: SynonymPayload) -> str:
        return f"Noun: {payload.noun}\nSynonyms: {', '.join(payload.synonyms)}"

    def metadata(self, payload: SynonymPayload) -> dict[str, Any]:
        return {
            "noun": payload.noun,
            "synonyms": list(payload.synonyms),
            "entity_id": payload.entity_id,
        }

    def payload_from_entry(self, entry: KnowledgeEntry) -> SynonymPayload:
        meta = entry.entry_metadata or {}
        return SynonymPayload(
            noun=meta.get("noun") or entry.title,
            synonyms=meta.get("synonyms") or [],
            entity_id=meta.get("entity_id"),
            parent_id=entry.parent_id,
        )


class BusinessKnowledgeHandler(KnowledgeHandler):
    """Free-text knowledge, optionally linked to an ingested file.

    A linked file is already chunked into `file_vectors`, so the entry itself
    is neither embedded nor mirrored.
    """

    knowledge_type = KnowledgeType.BUSINESS_KNOWLEDGE
    payload_model = BusinessKnowledgePayload
    update_model = BusinessKnowledgeUpdate

    def title(self, payload: BusinessKnowledgePayload) -> str:
        return payload.title

    def content(self, payload: BusinessKnowledgePayload) -> str:
        if payload.content:
            return payload.content
        if payload.file_id:
            return f"Document: {payload.filename or 'uploaded document'}"
        return ""

    def embedding_text(self, payload: BusinessKnowledgePayload) -> str | None:
        if payload.file_id:
            return None
        return payload.content

    def metadata(self, payload: BusinessKnowledgePayload) -> dict[str, Any]:
        return {
            "category": payload.category,
            "tags": list(payload.tags),
            "entity_id": payload.entity_id,
            "file_id": payload.file_id,
            "filename": payload.filename,
        }

    def should_mirror(self, payload: BusinessKnowledgePayload) -> bool:
        return not payload.file_id

    def payload_from_entry(self, entry: KnowledgeEntry) -> BusinessKnowledgePayload:
        meta = entry.entry_metadata or {}
        return BusinessKnowledgePayload(
            title=entry.title,
            content=entry.content,
            category=meta.get("category"),
            tags=meta.get("tags") or [],
            file_id=meta.get("file_id"),
            filename=meta.get("filename"),
            entity_id=meta.get("entity_id"),
            parent_id=entry.parent_id,
        )


HANDLERS: dict[KnowledgeType, KnowledgeHandler] = {
    handler.knowledge_type: handler
    for handler in (
        SemanticModelHandler(),
        QAPairHandler(),
        SynonymHandler(),
        BusinessKnowledgeHandler(),
    )
}


def get_handler(knowledge_type: KnowledgeType | str) -> KnowledgeHandler:
    """Look up the handler for a managed knowledge type.

    Raises:
        UnsupportedKnowledgeTypeError: For FILE or unknown types
    """
    handler = HANDLERS.get(coerce_type(knowledge_type))
    if handler is None:
        raise UnsupportedKnowledgeTypeError(str(knowledge_type))
    return handler


# ============================================
# Service
# ============================================


class KnowledgeBaseService:
    """Create, update, list and delete knowledge entries.

    Returned entries are plain dicts (`KnowledgeEntry.to_dict()`), the durable
    record representation.
    """

    def __init__(
        self,
        database: Database,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        qa_duplicate_threshold: float = 0.85,
    ):
        self.database = database
        self.vector_store = vector_store
        self.embedder = embedder
        self.qa_duplicate_threshold = qa_duplicate_threshold

    # ----- create -----

    async def add_knowledge(
        self,
        owner_id: str | None,
        knowledge_type: KnowledgeType | str,
        data: dict[str, Any] | BaseModel,
    ) -> dict[str, Any]:
        """Add one entry, dispatching on its type.

        A semantic model flagged `is_database_level` that carries
        `semantic_models` and `database_content` is added as a database
        bundle (one parent plus a child per table).
        """
        knowledge_type = coerce_type(knowledge_type)

        if knowledge_type == KnowledgeType.SEMANTIC_MODEL and isinstance(data, dict):
            if (
                data.get("is_database_level")
                and data.get("semantic_models")
                and data.get("database_content")
            ):
                return await self.add_database_semantic_model(
                    owner_id, parse_payload(DatabaseSemanticModelPayload, data)
                )

        if knowledge_type == KnowledgeType.QA_PAIR:
            return await self.add_qa_pair(owner_id, parse_payload(QAPairPayload, data))

        handler = get_handler(knowledge_type)
        return await self._add(owner_id, handler, parse_payload(handler.payload_model, data))

    async def add_semantic_model(
        self, owner_id: str | None, payload: SemanticModelPayload | dict[str, Any]
    ) -> dict[str, Any]:
        return await self.add_knowledge(owner_id, KnowledgeType.SEMANTIC_MODEL, payload)

    async def add_synonym(
        self, owner_id: str | None, payload: SynonymPayload | dict[str, Any]
    ) -> dict[str, Any]:
        return await self.add_knowledge(owner_id, KnowledgeType.SYNONYM, payload)

    async def add_business_knowledge(
        self, owner_id: str | None, payload: BusinessKnowledgePayload | dict[str, Any]
    ) -> dict[str, Any]:
        return await self.add_knowledge(owner_id, KnowledgeType.BUSINESS_KNOWLEDGE, payload)

    async def add_database_semantic_model(
        self,
        owner_id: str | None,
        payload: DatabaseSemanticModelPayload | dict[str, Any],
    ) -> dict[str, Any]:
        """Add a database-level semantic model and one child per table.

        Returns:
            {"parent": entry, "children": [entries], "total": count}
        """
        payload = parse_payload(DatabaseSemanticModelPayload, payload)
        meta = payload.metadata
        handler = HANDLERS[KnowledgeType.SEMANTIC_MODEL]

        parent = await self._add(
            owner_id,
            handler,
            SemanticModelPayload(
                semantic_model_id=payload.database_name,
                database_name=payload.database_name,
                content=payload.database_content,
                is_database_level=True,
                entity_id=meta.get("entity_id"),
                semantic_description=generate_semantic_model_description(
                    payload.database_name, payload.semantic_models
                ),
                title=meta.get("title") or payload.database_name,
                model_type=meta.get("model_type"),
            ),
        )

        child_payloads = []
        for model in payload.semantic_models:
            name = model.get("name") or model.get("model") or ""
            child_payloads.append(
                SemanticModelPayload(
                    semantic_model_id=name,
                    database_name=payload.database_name,
                    table_name=name,
                    content=json.dumps(model, ensure_ascii=False),
                    parent_id=parent["id"],
                    entity_id=meta.get("entity_id"),
                )
            )

        embeddings = await self.embedder.embed_texts([p.content for p in child_payloads])
        children = [
            await self._add(owner_id, handler, child, embedding=embedding)
            for child, embedding in zip(child_payloads, embeddings)
        ]

        logger.info(
            f"[KnowledgeBase] Added database semantic model {payload.database_name} "
            f"(1 parent + {len(children)} children)"
        )
        return {"parent": parent, "children": children, "total": 1 + len(children)}

    async def check_duplicate_qa(
        self,
        question: str,
        entity_id: str | None = None,
        min_score: float | None = None,
    ) -> dict[str, Any] | None:
        """Find an existing QA pair asking the same question.

        Exact match on the normalized question first, then vector similarity
        at or above `min_score` (defaults to the configured threshold). Both
        lookups are scoped to `entity_id` when given.

        Returns:
            The existing entry, or None
        """
        question = question.strip()
        entity_id = normalize_entity_id(entity_id)
        embedding = await self.embedder.embed_text(question)
        return await self._find_duplicate_qa(question, entity_id, embedding, min_score)

    async def _find_duplicate_qa(
        self,
        question: str,
        entity_id: str | None,
        embedding: list[float] | None,
        min_score: float | None = None,
    ) -> dict[str, Any] | None:
        threshold = self.qa_duplicate_threshold if min_score is None else min_score

        async with self.database.session() as db:
            existing = await KnowledgeEntryRepository(db).find_qa_by_question(question, entity_id)
        if existing:
            logger.debug(f"[KnowledgeBase] Exact duplicate QA found: {existing.id}")
            return existing.to_dict()

        if embedding is None:
            return None

        try:
            hits = await self.vector_store.search_similar(
                embedding,
                types=[KnowledgeType.QA_PAIR],
                entity_id=entity_id,
                top_k=1,
                min_score=threshold,
            )
        except Exception as e:
            logger.warning(f"[KnowledgeBase] Similarity duplicate check failed: {e}")
            return None

        if not hits or hits[0]["score"] < threshold:
            return None

        async with self.database.session() as db:
            existing = await KnowledgeEntryRepository(db).get(hits[0]["id"])
        if existing:
            logger.debug(
                f"[KnowledgeBase] Similar QA found: {existing.id} (score {hits[0]['score']:.3f})"
            )
            return existing.to_dict()
        return None

    async def add_qa_pair(
        self, owner_id: str | None, payload: QAPairPayload | dict[str, Any]
    ) -> dict[str, Any]:
        """Add a QA pair, or return the existing entry for a duplicate question."""
        payload = parse_payload(QAPairPayload, payload)
        handler = HANDLERS[KnowledgeType.QA_PAIR]
        embedding = await self.embedder.embed_text(handler.embedding_text(payload))

        if not payload.skip_duplicate_check:
            duplicate = await self._find_duplicate_qa(payload.question, payload.entity_id, embedding)
            if duplicate:
                logger.info(
                    f"[KnowledgeBase] QA pair already exists, skipping: {payload.question[:30]}"
                )
                return duplicate

        return await self._add(owner_id, handler, payload, embedding=embedding)

    async def add_knowledge_entries(
        self, owner_id: str | None, entries: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Add entries one by one. Failed items are logged and skipped.

        Each item is `{"type": ..., "data": {...}}` or a flat dict carrying
        `type` alongside its fields.
        """
        results = []
        for index, item in enumerate(entries):
            item = dict(item)
            knowledge_type = item.pop("type", None)
            data = item.pop("data", item)
            try:
                results.append(await self.add_knowledge(owner_id, knowledge_type, data))
            except Exception as e:
                logger.warning(f"[KnowledgeBase] Batch item {index} ({knowledge_type}) failed: {e}")
        return results

    async def add_file_entry(
        self,
        owner_id: str | None,
        file_id: str,
        filename: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record an ingested document.

        The entry is never embedded; its chunks live in `file_vectors` and
        are removed with it. Recording a `file_id` that already has an entry
        refreshes that entry instead of adding a second one.
        """
        if not file_id or not str(file_id).strip():
            raise ValidationError("file_id must be a non-empty string")
        fields = {
            "title": filename or file_id,
            "content": f"Document: {filename or 'ingested document'}",
            "metadata": {
                **(metadata or {}),
                "file_id": file_id,
                "filename": filename,
                "entity_id": normalize_entity_id(entity_id),
            },
        }
        async with self.database.session() as db:
            repo = KnowledgeEntryRepository(db)
            entry = await repo.find_file_entry(file_id)
            if entry is None:
                entry = await repo.create(type=KnowledgeType.FILE, owner_id=owner_id, **fields)
                logger.info(f"[KnowledgeBase] Recorded file {file_id} as {entry.id}")
            else:
                entry = await repo.update(entry, **fields)
                logger.info(f"[KnowledgeBase] Refreshed file {file_id} ({entry.id})")
            return entry.to_dict()

    async def _add(
        self,
        owner_id: str | None,
        handler: KnowledgeHandler,
        payload: KnowledgePayload,
        embedding: list[float] | None = None,
    ) -> dict[str, Any]:
        if embedding is None:
            text = handler.embedding_text(payload)
            embedding = await self.embedder.embed_text(text) if text else None

        async with self.database.session() as db:
            repo = KnowledgeEntryRepository(db)
            if payload.parent_id:
                await self._check_parent(repo, payload.parent_id)
            entry = await repo.create(
                type=handler.knowledge_type,
                title=handler.title(payload),
                content=handler.content(payload),
                owner_id=owner_id,
                embedding=embedding,
                parent_id=payload.parent_id,
                metadata=handler.metadata(payload),
            )

        if embedding is not None and handler.should_mirror(payload):
            await self._mirror(entry, handler.vector_metadata(payload, entry))

        logger.info(
            f"[KnowledgeBase] Added {handler.knowledge_type.value} {entry.id}"
            f" ({'with' if embedding else 'without'} embedding)"
        )
        return entry.to_dict()

    @staticmethod
    async def _check_parent(repo: KnowledgeEntryRepository, parent_id: str) -> None:
        parent = await repo.get(parent_id)
        if parent is None:
            raise EntryNotFoundError(parent_id)
        if parent.parent_id is not None:
            raise ValidationError(f"Entry {parent_id} is a child and cannot have children")

    async def _mirror(self, entry: KnowledgeEntry, metadata: dict[str, Any]) -> None:
        try:
            await self.vector_store.store_vector(
                owner_id=entry.owner_id,
                knowledge_type=entry.type,
                entry_id=entry.id,
                content=entry.content,
                embedding=entry.embedding,
                metadata=metadata,
            )
        except Exception as e:
            logger.warning(
                f"[KnowledgeBase] Vector mirror failed for {entry.id}, kept durable record only: {e}"
            )

    async def _drop_mirror(self, entry_id: str, knowledge_type: KnowledgeType) -> None:
        try:
            await self.vector_store.delete_vector(entry_id, knowledge_type)
        except Exception as e:
            logger.warning(f"[KnowledgeBase] Failed to delete vector for {entry_id}: {e}")

    # ----- update -----

    async def update_knowledge(
        self,
        entry_id: str,
        owner_id: str | None,
        knowledge_type: KnowledgeType | str,
        changes: dict[str, Any] | BaseModel,
    ) -> dict[str, Any]:
        """Apply a partial update and refresh derived fields.

        Title, content and metadata are recomputed from the merged payload.
        The embedding is regenerated only when the embedded text changed; the
        vector mirror is refreshed, or dropped when the entry no longer
        mirrors (e.g. business knowledge newly linked to a file).

        Raises:
            UnsupportedKnowledgeTypeError: For types without updates
            EntryNotFoundError: If no such entry belongs to the owner
        """
        handler = get_handler(knowledge_type)
        if handler.update_model is None:
            raise UnsupportedKnowledgeTypeError(f"{handler.knowledge_type.value} (update)")
        update = parse_payload(handler.update_model, changes)
        fields = update.model_dump(exclude_none=True)

        async with self.database.session() as db:
            entry = await KnowledgeEntryRepository(db).get(entry_id, owner_id)
        if entry is None or entry.type != handler.knowledge_type:
            raise EntryNotFoundError(entry_id)

        current = handler.payload_from_entry(entry)
        merged = parse_payload(
            handler.payload_model, {**current.model_dump(), **fields}
        )

        embedding = entry.embedding
        new_text = handler.embedding_text(merged)
        if new_text != handler.embedding_text(current) or embedding is None:
            embedding = await self.embedder.embed_text(new_text) if new_text else None

        async with self.database.session() as db:
            repo = KnowledgeEntryRepository(db)
            entry = await repo.get(entry_id, owner_id)
            if entry is None:
                raise EntryNotFoundError(entry_id)
            entry = await repo.update(
                entry,
                title=handler.title(merged),
                content=handler.content(merged),
                embedding=embedding,
                metadata={**(entry.entry_metadata or {}), **handler.metadata(merged)},
            )

        if embedding is not None and handler.should_mirror(merged):
            await self._mirror(entry, handler.vector_metadata(merged, entry))
        else:
            await self._drop_mirror(entry.id, entry.type)

        logger.info(f"[KnowledgeBase] Updated {handler.knowledge_type.value} {entry_id}")
        return entry.to_dict()

    async def update_qa_pair(
        self, entry_id: str, owner_id: str | None, changes: QAPairUpdate | dict[str, Any]
    ) -> dict[str, Any]:
        return await self.update_knowledge(entry_id, owner_id, KnowledgeType.QA_PAIR, changes)

    async def update_synonym(
        self, entry_id: str, owner_id: str | None, changes: SynonymUpdate | dict[str, Any]
    ) -> dict[str, Any]:
        return await self.update_knowledge(entry_id, owner_id, KnowledgeType.SYNONYM, changes)

    async def update_business_knowledge(
        self,
        entry_id: str,
        owner_id: str | None,
        changes: BusinessKnowledgeUpdate | dict[str, Any],
    ) -> dict[str, Any]:
        return await self.update_knowledge(
            entry_id, owner_id, KnowledgeType.BUSINESS_KNOWLEDGE, changes
        )

    # ----- read -----

    async def get_knowledge_entry(
        self,
        entry_id: str,
        owner_id: str | None = None,
        include_children: bool = False,
    ) -> dict[str, Any] | None:
        async with self.database.session() as db:
            repo = KnowledgeEntryRepository(db)
            entry = await repo.get(entry_id, owner_id)
            if entry is None:
                return None
            result = entry.to_dict()
            if include_children:
                result["children"] = [c.to_dict() for c in await repo.get_children(entry.id)]
        return result

    async def get_knowledge_entries(
        self,
        owner_id: str | None = None,
        knowledge_type: KnowledgeType | str | None = None,
        entity_id: str | None = None,
        include_children: bool = False,
        limit: int = 100,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        """List top-level entries, newest first.

        Every returned entry has a `children` list, populated only when
        `include_children` is set.
        """
        knowledge_type = coerce_type(knowledge_type) if knowledge_type else None

        async with self.database.session() as db:
            repo = KnowledgeEntryRepository(db)
            parents = await repo.list_parents(
                owner_id=owner_id,
                type=knowledge_type,
                entity_id=normalize_entity_id(entity_id),
                limit=limit,
                offset=skip,
            )
            children = (
                await repo.get_children_for([p.id for p in parents]) if include_children else {}
            )

        results = []
        for parent in parents:
            item = parent.to_dict()
            item["children"] = [c.to_dict() for c in children.get(parent.id, [])]
            results.append(item)

        logger.debug(f"[KnowledgeBase] Listed {len(results)} entries (type={knowledge_type})")
        return results

    # ----- delete -----

    async def delete_knowledge_entry(self, entry_id: str, owner_id: str | None = None) -> bool:
        """Delete an entry, cascading to its children.

        Phase 1 removes vector mirrors and linked file vectors, logging each
        failure and carrying on. Phase 2 deletes the child and parent rows in
        one transaction. Deleting a missing entry is a no-op.

        Returns:
            True if the entry existed and was removed
        """
        async with self.database.session() as db:
            repo = KnowledgeEntryRepository(db)
            entry = await repo.get(entry_id, owner_id)
            if entry is None:
                logger.warning(f"[KnowledgeBase] Delete skipped, entry not found: {entry_id}")
                return False
            children = [] if entry.parent_id else await repo.get_children(entry.id)

        targets = [*children, entry]
        for target in targets:
            if target.type != KnowledgeType.FILE:
                await self._drop_mirror(target.id, target.type)
            file_id = (target.entry_metadata or {}).get("file_id")
            if file_id:
                try:
                    await self.vector_store.delete_file_vectors(file_id)
                except Exception as e:
                    logger.warning(f"[KnowledgeBase] Failed to delete file vectors for {file_id}: {e}")

        async with self.database.session() as db:
            removed = await KnowledgeEntryRepository(db).delete_many([t.id for t in targets])

        logger.info(
            f"[KnowledgeBase] Deleted {entry.type.value} {entry_id} "
            f"with {len(children)} children ({removed} rows)"
        )
        return removed > 0
