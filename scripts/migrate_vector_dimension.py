#!/usr/bin/env python3
"""Recreate vector collections at the configured embedding dimension.

Qdrant cannot resize a collection in place, so every collection whose
vector size differs from EMBEDDING_DIMENSIONS is dropped and created
again. Their points are lost; re-add knowledge entries and re-ingest files
afterwards.

Run with: uv run python scripts/migrate_vector_dimension.py [--all] [--dry-run] [--yes]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from knowledge_engine.core.config import get_settings
from knowledge_engine.rag.vector_store import VectorStore


def collections_to_recreate(info: dict[str, dict | None], dimension: int, recreate_all: bool = False) -> list[str]:
    """Existing collections that must be dropped to reach `dimension`."""
    return [
        name
        for name, stats in info.items()
        if stats is not None and (recreate_all or stats["dimension"] != dimension)
    ]


async def migrate_vector_dimension(recreate_all: bool = False, dry_run: bool = False, assume_yes: bool = False):
    settings = get_settings()
    dimension = settings.embedding_dimensions
    store = VectorStore.from_settings(settings)

    print(f"Qdrant: {settings.qdrant_url}")
    print(f"Target dimension: {dimension}\n")

    if not await store.ping():
        print("✗ Qdrant is unreachable")
        await store.shutdown()
        return 1

    try:
        info = await store.get_collection_info()
        targets = collections_to_recreate(info, dimension, recreate_all)

        for name, stats in info.items():
            if stats is None:
                print(f"  {name}: missing, will be created")
            else:
                print(f"  {name}: {stats['points_count']} points, dim={stats['dimension']}")

        if not targets:
            print("\n✓ All collections already match the configured dimension")
            await store.init()
            return 0

        print(f"\n{len(targets)} collection(s) will be dropped and recreated:")
        for name in targets:
            print(f"  - {name}")

        if dry_run:
            return 0

        if not assume_yes:
            answer = input("\nAll points in these collections will be deleted. Continue? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("Aborted")
                return 1

        await store.recreate_collections(targets)
        await store.init()

        failed = 0
        for name, stats in (await store.get_collection_info()).items():
            if stats is not None and stats["dimension"] == dimension:
                print(f"✓ {name}: dim={stats['dimension']}")
            else:
                failed += 1
                print(f"✗ {name}: not recreated")

        print("\nRe-add knowledge entries and re-ingest files to rebuild their vectors.")
        return 1 if failed else 0
    finally:
        await store.shutdown()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--all", action="store_true", help="Recreate every collection, even matching ones")
    parser.add_argument("--dry-run", action="store_true", help="List collections without changing them")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()
    sys.exit(asyncio.run(migrate_vector_dimension(recreate_all=args.all, dry_run=args.dry_run, assume_yes=args.yes)))
