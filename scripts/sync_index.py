#!/usr/bin/env python3
"""
Sync Embeddings to the Vector Index

Pushes catalog embeddings from the database into Qdrant. Safe to run from
cron and safe to run twice at once: point ids are stable tokens, so a
repeated upsert overwrites instead of duplicating.

Modes:
    unsynced  Only PENDING records (default).
    all       Mark every record PENDING, then sync (restores deleted points).
    force     Drop the collection, then sync everything into a fresh one.

Usage:
    python scripts/sync_index.py
    python scripts/sync_index.py --mode all --batch-size 100
    python scripts/sync_index.py --stats-only
    python scripts/sync_index.py --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Required for direct script execution without package installation
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from bookmatch.core.config import get_settings
from bookmatch.core.database import dispose_engine, session_scope
from bookmatch.core.errors import BookmatchError
from bookmatch.core.logging import setup_logging
from bookmatch.models.schemas import SyncStats
from bookmatch.services.sync import SyncEngine
from bookmatch.services.vector_index import QdrantIndexClient

MODES = ("unsynced", "all", "force")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync ebook embeddings to Qdrant")
    parser.add_argument("--mode", "-m", choices=MODES, default="unsynced")
    parser.add_argument("--batch-size", "-b", type=int, default=None)
    parser.add_argument("--max-batches", type=int, default=None)
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Stop starting new batches after this many seconds",
    )
    parser.add_argument(
        "--stats-only",
        action="store_true",
        help="Only show collection statistics",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be synced without doing it",
    )
    return parser.parse_args()


def print_stats(stats: SyncStats) -> None:
    print("=" * 50)
    if stats.collection is None:
        print("Collection:        (does not exist)")
    else:
        print(f"Collection:        {stats.collection.name}")
        print(f"Status:            {stats.collection.status}")
        print(f"Points (Qdrant):   {stats.collection.points_count}")
        print(f"Vector size:       {stats.collection.vector_size}")
        print(f"Distance:          {stats.collection.distance}")
    print(f"Embeddings (DB):   {stats.total_embeddings}")
    print(f"Synced:            {stats.synced_embeddings}")
    print(f"Pending:           {stats.pending_embeddings}")
    print("=" * 50)


async def main() -> int:
    args = parse_args()
    settings = get_settings()
    setup_logging(settings)

    index = QdrantIndexClient(settings)
    engine = SyncEngine(settings, index)
    try:
        async with session_scope(settings) as session:
            stats = await engine.collection_stats(session)
            print_stats(stats)
            if args.stats_only:
                return 0

            if args.dry_run:
                count = (
                    stats.pending_embeddings
                    if args.mode == "unsynced"
                    else stats.total_embeddings
                )
                print(f"Dry run: would sync {count} embeddings (mode={args.mode})")
                return 0

            if args.mode == "force":
                await index.delete_collection(engine.collection)
            if args.mode == "unsynced":
                report = await engine.sync_unsynced(
                    session,
                    batch_size=args.batch_size,
                    max_batches=args.max_batches,
                    deadline_seconds=args.deadline,
                )
            else:
                report = await engine.sync_all(
                    session,
                    batch_size=args.batch_size,
                    max_batches=args.max_batches,
                    deadline_seconds=args.deadline,
                )

            print(
                f"Synced {report.synced}/{report.total} embeddings "
                f"in {report.batches} batches ({report.errors} errors, "
                f"{report.skipped} skipped)"
            )
            print_stats(await engine.collection_stats(session))
            return 1 if report.errors else 0
    except BookmatchError as e:
        print(f"Sync aborted: {e}")
        return 2
    finally:
        await index.aclose()
        await dispose_engine()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
