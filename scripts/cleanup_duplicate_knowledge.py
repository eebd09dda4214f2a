#!/usr/bin/env python3
"""Remove duplicate semantic models and orphaned children.

Keeps the newest top-level semantic model per (database_name,
is_database_level) and cascade-deletes the older ones. Children whose
parent no longer exists are deleted as well.

Run with: uv run python scripts/cleanup_duplicate_knowledge.py [--dry-run]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from knowledge_engine.core.config import get_settings
from knowledge_engine.db.models import KnowledgeEntry, KnowledgeType
from knowledge_engine.db.repository import KnowledgeEntryRepository
from knowledge_engine.rag.service import KnowledgeEngine


def find_duplicates(entries: list[KnowledgeEntry]) -> tuple[list[KnowledgeEntry], list[KnowledgeEntry]]:
    """Split semantic models into (older duplicate parents, orphaned children).

    `entries` must be ordered newest first.
    """
    ids = {entry.id for entry in entries}
    seen: set[tuple[str | None, bool]] = set()
    duplicates = []
    orphans = []

    for entry in entries:
        meta = entry.entry_metadata or {}
        if entry.parent_id is None:
            key = (meta.get("database_name"), bool(meta.get("is_database_level")))
            if key in seen:
                duplicates.append(entry)
            else:
                seen.add(key)
        elif entry.parent_id not in ids:
            orphans.append(entry)

    return duplicates, orphans


async def cleanup_duplicate_knowledge(dry_run: bool = False):
    settings = get_settings()
    engine = KnowledgeEngine.from_settings(settings)

    # Only the stores are needed; models stay unloaded
    await engine.database.init()
    await engine.vector_store.init()

    try:
        async with engine.database.session() as db:
            entries = await KnowledgeEntryRepository(db).list_by_type(KnowledgeType.SEMANTIC_MODEL)

        duplicates, orphans = find_duplicates(entries)
        print(f"Found {len(duplicates)} duplicate semantic model(s), {len(orphans)} orphan(s)")

        for entry in [*duplicates, *orphans]:
            label = f"{entry.title} ({entry.id})"
            if dry_run:
                print(f"  would delete {label}")
                continue
            if await engine.knowledge.delete_knowledge_entry(entry.id):
                print(f"✓ Deleted {label}")
            else:
                print(f"✗ Already gone: {label}")
    finally:
        await engine.vector_store.shutdown()
        await engine.database.shutdown()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="List deletions without deleting")
    args = parser.parse_args()
    asyncio.run(cleanup_duplicate_knowledge(dry_run=args.dry_run))
