"""Create knowledge_entries

Revision ID: 20261017_0900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261017_0900"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

KNOWLEDGE_TYPES = ("semantic_model", "qa_pair", "synonym", "business_knowledge", "file")


def upgrade() -> None:
    """Create the durable knowledge record table."""
    json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

    op.create_table(
        "knowledge_entries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(255), nullable=True),
        sa.Column(
            "type",
            sa.Enum(*KNOWLEDGE_TYPES, name="knowledge_type"),
            nullable=False,
        ),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "embedding",
            json_type,
            nullable=True,
            comment="Best-effort embedding; null when every tier failed",
        ),
        sa.Column(
            "parent_id",
            sa.String(36),
            sa.ForeignKey("knowledge_entries.id"),
            nullable=True,
        ),
        sa.Column("metadata", json_type, nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True
        ),
    )
    op.create_index("ix_knowledge_entries_owner_id", "knowledge_entries", ["owner_id"])
    op.create_index("ix_knowledge_entries_type", "knowledge_entries", ["type"])
    op.create_index("ix_knowledge_entries_parent_id", "knowledge_entries", ["parent_id"])
    op.create_index("ix_knowledge_entries_created_at", "knowledge_entries", ["created_at"])


def downgrade() -> None:
    """Drop the knowledge_entries table and its enum."""
    op.drop_index("ix_knowledge_entries_created_at", table_name="knowledge_entries")
    op.drop_index("ix_knowledge_entries_parent_id", table_name="knowledge_entries")
    op.drop_index("ix_knowledge_entries_type", table_name="knowledge_entries")
    op.drop_index("ix_knowledge_entries_owner_id", table_name="knowledge_entries")
    op.drop_table("knowledge_entries")
    sa.Enum(name="knowledge_type").drop(op.get_bind(), checkfirst=True)
