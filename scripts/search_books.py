#!/usr/bin/env python3
"""
Search Books

Ad-hoc similarity search from the command line, for checking what the
index returns for a description.

Usage:
    python scripts/search_books.py "fantasy adventure with dragons and magic"
    python scripts/search_books.py "space opera" --limit 5 --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Required for direct script execution without package installation
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from bookmatch.core.config import get_settings
from bookmatch.core.database import dispose_engine, session_scope
from bookmatch.core.errors import BookmatchError
from bookmatch.core.logging import setup_logging
from bookmatch.services.embeddings import build_embedding_provider
from bookmatch.services.search import SimilaritySearchService
from bookmatch.services.vector_index import QdrantIndexClient

DEFAULT_QUERY = "fantasy adventure with dragons and magic"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find books similar to a description")
    parser.add_argument("text", nargs="?", default=DEFAULT_QUERY)
    parser.add_argument("--limit", "-l", type=int, default=10)
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    settings = get_settings()
    setup_logging(settings)

    index = QdrantIndexClient(settings)
    try:
        service = SimilaritySearchService(
            settings, build_embedding_provider(settings), index
        )
        async with session_scope(settings) as session:
            hits = await service.find_similar(session, args.text, limit=args.limit)
    except BookmatchError as e:
        print(f"Search failed: {e}")
        return 2
    finally:
        await index.aclose()
        await dispose_engine()

    if args.json:
        rows = [
            {
                "rank": rank,
                "isbn": hit.isbn,
                "title": hit.ebook.title,
                "author": hit.ebook.author,
                "score": round(hit.score, 4),
            }
            for rank, hit in enumerate(hits, 1)
        ]
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return 0

    if not hits:
        print("No similar books found.")
        return 0
    print(f"Top {len(hits)} matches for: {args.text!r}")
    for rank, hit in enumerate(hits, 1):
        print(
            f"{rank:>3}. [{hit.score:.4f}] "
            f"{hit.ebook.title} - {hit.ebook.author} ({hit.isbn})"
        )
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
