#!/usr/bin/env python3
"""Print vector collection statistics.

Run with: uv run python scripts/diagnose_vector_store.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from knowledge_engine.core.config import get_settings
from knowledge_engine.rag.vector_store import VectorStore


async def diagnose_vector_store():
    """Show point counts and vector size per collection."""
    settings = get_settings()
    store = VectorStore.from_settings(settings)

    print(f"Qdrant: {settings.qdrant_url}")
    print(f"Configured dimension: {settings.embedding_dimensions}\n")

    if not await store.ping():
        print("✗ Qdrant is unreachable")
        await store.shutdown()
        return 1

    mismatched = 0
    info = await store.get_collection_info()
    for name, stats in info.items():
        if stats is None:
            print(f"✗ {name}: missing")
            continue
        marker = "✓"
        if stats["dimension"] != settings.embedding_dimensions:
            marker = "✗"
            mismatched += 1
        print(f"{marker} {name}: {stats['points_count']} points, dim={stats['dimension']}, status={stats['status']}")

    await store.shutdown()
    if mismatched:
        print(f"\n✗ {mismatched} collection(s) do not match the configured dimension")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(diagnose_vector_store()))
