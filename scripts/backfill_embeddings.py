#!/usr/bin/env python3
"""
Backfill Embeddings Script

Embeds catalog records that have no embedding yet and stores them in the
catalog embedding pool (PENDING). Run ``sync_index.py`` afterwards to push
them to Qdrant.

Usage:
    python scripts/backfill_embeddings.py --limit 200
    python scripts/backfill_embeddings.py --isbn 9788375780635 --force
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
from bookmatch.services.catalog_embeddings import CatalogEmbeddingIndexer
from bookmatch.services.embeddings import build_embedding_provider


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Embed catalog records")
    parser.add_argument("--limit", type=int, default=50, help="Records per run")
    parser.add_argument("--isbn", help="Embed a single record by ISBN")
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --isbn: re-embed even if an embedding exists",
    )
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    settings = get_settings()
    setup_logging(settings)

    print("Starting Backfill...")
    try:
        indexer = CatalogEmbeddingIndexer(build_embedding_provider(settings))
        async with session_scope(settings) as session:
            if args.isbn:
                record = await indexer.embed_one(session, args.isbn, force=args.force)
                print(
                    f"Embedding for {record.ebook_isbn} stored "
                    f"(uuid={record.payload_uuid}, synced={record.synced_to_index})"
                )
                return 0

            report = await indexer.embed_pending(session, limit=args.limit)
            print(
                f"Embedded {report.embedded}/{report.total} records "
                f"({report.errors} errors)"
            )
            return 1 if report.errors else 0
    except BookmatchError as e:
        print(f"Backfill failed: {e}")
        return 2
    finally:
        await dispose_engine()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
