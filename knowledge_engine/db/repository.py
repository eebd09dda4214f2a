"""Database repository for knowledge entry persistence.

Provides async CRUD operations for durable knowledge records.
"""

from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_engine.db.models import KnowledgeEntry, KnowledgeType


class KnowledgeEntryRepository:
    """Repository for knowledge entry operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        type: KnowledgeType,
        title: str,
        content: str,
        owner_id: str | None = None,
        embedding: list[float] | None = None,
        parent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry:
        """Create a new knowledge entry."""
        entry = KnowledgeEntry(
            owner_id=owner_id,
            type=type,
            title=title,
            content=content,
            embedding=embedding,
            parent_id=parent_id,
            entry_metadata=metadata or {},
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get(self, entry_id: str, owner_id: str | None = None) -> KnowledgeEntry | None:
        """Get an entry by ID, optionally scoped to an owner."""
        query = select(KnowledgeEntry).where(KnowledgeEntry.id == entry_id)
        if owner_id is not None:
            query = query.where(KnowledgeEntry.owner_id == owner_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_many(self, entry_ids: list[str]) -> dict[str, KnowledgeEntry]:
        """Get entries by ID, keyed by ID. Missing IDs are absent."""
        if not entry_ids:
            return {}
        result = await self.db.execute(
            select(KnowledgeEntry).where(KnowledgeEntry.id.in_(entry_ids))
        )
        return {entry.id: entry for entry in result.scalars().all()}

    async def find_qa_by_question(
        self,
        question: str,
        entity_id: str | None = None,
    ) -> KnowledgeEntry | None:
        """Exact-match lookup of a QA pair by its normalized question."""
        query = select(KnowledgeEntry).where(
            KnowledgeEntry.type == KnowledgeType.QA_PAIR,
            KnowledgeEntry.entry_metadata["question"].as_string() == question,
        )
        if entity_id:
            query = query.where(KnowledgeEntry.entry_metadata["entity_id"].as_string() == entity_id)
        result = await self.db.execute(query.order_by(KnowledgeEntry.created_at.asc()).limit(1))
        return result.scalar_one_or_none()

    async def find_file_entry(self, file_id: str) -> KnowledgeEntry | None:
        """Get the `file` entry recorded for an ingested document."""
        result = await self.db.execute(
            select(KnowledgeEntry)
            .where(
                KnowledgeEntry.type == KnowledgeType.FILE,
                KnowledgeEntry.entry_metadata["file_id"].as_string() == file_id,
            )
            .order_by(KnowledgeEntry.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_children(self, parent_id: str) -> list[KnowledgeEntry]:
        """Get child entries of a parent, oldest first."""
        result = await self.db.execute(
            select(KnowledgeEntry)
            .where(KnowledgeEntry.parent_id == parent_id)
            .order_by(KnowledgeEntry.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_children_for(self, parent_ids: list[str]) -> dict[str, list[KnowledgeEntry]]:
        """Group children of several parents by parent ID."""
        grouped: dict[str, list[KnowledgeEntry]] = {pid: [] for pid in parent_ids}
        if not parent_ids:
            return grouped
        result = await self.db.execute(
            select(KnowledgeEntry)
            .where(KnowledgeEntry.parent_id.in_(parent_ids))
            .order_by(KnowledgeEntry.created_at.asc())
        )
        for child in result.scalars().all():
            grouped[child.parent_id].append(child)
        return grouped

    async def list_parents(
        self,
        owner_id: str | None = None,
        type: KnowledgeType | None = None,
        entity_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[KnowledgeEntry]:
        """List top-level entries, newest first."""
        query = select(KnowledgeEntry).where(KnowledgeEntry.parent_id.is_(None))

        if owner_id is not None:
            query = query.where(KnowledgeEntry.owner_id == owner_id)
        if type is not None:
            query = query.where(KnowledgeEntry.type == type)
        if entity_id:
            query = query.where(KnowledgeEntry.entry_metadata["entity_id"].as_string() == entity_id)

        query = query.order_by(KnowledgeEntry.created_at.desc()).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_by_type(self, type: KnowledgeType) -> list[KnowledgeEntry]:
        """All entries of one type, newest first."""
        result = await self.db.execute(
            select(KnowledgeEntry)
            .where(KnowledgeEntry.type == type)
            .order_by(KnowledgeEntry.created_at.desc())
        )
        return list(result.scalars().all())

    async def count_by_type(self) -> dict[str, int]:
        """Number of entries per knowledge type."""
        result = await self.db.execute(
            select(KnowledgeEntry.type, func.count()).group_by(KnowledgeEntry.type)
        )
        return {row[0].value: row[1] for row in result.all()}

    async def list_with_embeddings(
        self,
        types: list[KnowledgeType],
        owner_id: str | None = None,
        entity_id: str | None = None,
    ) -> list[KnowledgeEntry]:
        """Entries that carry an embedding, for in-process similarity."""
        query = select(KnowledgeEntry).where(
            KnowledgeEntry.type.in_(types),
            KnowledgeEntry.embedding.is_not(None),
        )
        if owner_id is not None:
            query = query.where(KnowledgeEntry.owner_id == owner_id)
        if entity_id:
            query = query.where(KnowledgeEntry.entry_metadata["entity_id"].as_string() == entity_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update(self, entry: KnowledgeEntry, **fields: Any) -> KnowledgeEntry:
        """Apply field updates. `metadata` replaces the whole map."""
        for key, value in fields.items():
            if key == "metadata":
                entry.entry_metadata = dict(value)
            else:
                setattr(entry, key, value)
        await self.db.flush()
        return entry

    async def delete_many(self, entry_ids: list[str]) -> int:
        """Delete entries by ID. Returns the number removed."""
        if not entry_ids:
            return 0
        result = await self.db.execute(
            delete(KnowledgeEntry).where(KnowledgeEntry.id.in_(entry_ids))
        )
        return result.rowcount or 0
