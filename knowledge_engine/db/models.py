"""SQLAlchemy database models.

Defines the durable knowledge records. Vector mirrors live in Qdrant.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
PortableJSON = JSON().with_variant(JSONB(), "postgresql")
# None is stored as SQL NULL so "no embedding" is queryable
NullableJSON = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def utc_now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ============================================
# Enums
# ============================================

class KnowledgeType(str, PyEnum):
    """Closed set of knowledge kinds. Each kind owns one vector collection."""
    SEMANTIC_MODEL = "semantic_model"
    QA_PAIR = "qa_pair"
    SYNONYM = "synonym"
    BUSINESS_KNOWLEDGE = "business_knowledge"
    FILE = "file"


# Types created through the knowledge-management boundary
MANAGED_TYPES: tuple[KnowledgeType, ...] = (
    KnowledgeType.SEMANTIC_MODEL,
    KnowledgeType.QA_PAIR,
    KnowledgeType.SYNONYM,
    KnowledgeType.BUSINESS_KNOWLEDGE,
)


# ============================================
# Core Models
# ============================================

class KnowledgeEntry(Base):
    """A durable knowledge record.

    Hierarchy is single-level: an entry with a parent never has children.
    The embedding column is nullable because embedding is best-effort.
    """
    __tablename__ = "knowledge_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # Null owner means shared knowledge
    owner_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[KnowledgeType] = mapped_column(
        Enum(
            KnowledgeType,
            name="knowledge_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    embedding: Mapped[Optional[list]] = mapped_column(NullableJSON, nullable=True)

    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("knowledge_entries.id"), nullable=True
    )

    # "metadata" is reserved on declarative classes
    entry_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", PortableJSON, nullable=False, default=dict
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_knowledge_entries_owner_id", "owner_id"),
        Index("ix_knowledge_entries_type", "type"),
        Index("ix_knowledge_entries_parent_id", "parent_id"),
        Index("ix_knowledge_entries_created_at", "created_at"),
    )

    @property
    def entity_id(self) -> str | None:
        return (self.entry_metadata or {}).get("entity_id")

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        """Serialize to the durable record representation."""
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "type": self.type.value,
            "title": self.title,
            "content": self.content,
            "parent_id": self.parent_id,
            "metadata": dict(self.entry_metadata or {}),
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data
