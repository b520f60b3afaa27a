#!/usr/bin/env python3
"""
Refresh Recommendation Results

Re-runs the similarity search for recommendations that have no results
yet or whose results are older than RECOMMENDATION_STALE_DAYS. Meant for
cron; ``--quiet`` keeps the output to errors only.

Usage:
    python scripts/refresh_recommendations.py
    python scripts/refresh_recommendations.py --max-recommendations 500 --force
    python scripts/refresh_recommendations.py --recommendation-id 42
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

# Required for direct script execution without package installation
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from bookmatch.core.config import get_settings
from bookmatch.core.database import dispose_engine, session_scope
from bookmatch.core.errors import BookmatchError
from bookmatch.core.logging import setup_logging
from bookmatch.services.embeddings import build_embedding_provider
from bookmatch.services.recommendations import RecommendationService
from bookmatch.services.search import SimilaritySearchService
from bookmatch.services.vector_index import QdrantIndexClient


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Refresh stale recommendation results")
    parser.add_argument("--max-recommendations", "-m", type=int, default=100)
    parser.add_argument(
        "--force",
        action="store_true",
        help="Refresh every recommendation, stale or not",
    )
    parser.add_argument(
        "--recommendation-id", type=int, help="Refresh one recommendation"
    )
    parser.add_argument("--quiet", "-q", action="store_true", help="Errors only")
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    settings = get_settings()
    setup_logging(settings)
    if args.quiet:
        logging.getLogger("bookmatch").setLevel(logging.ERROR)

    index = QdrantIndexClient(settings)
    try:
        search = SimilaritySearchService(
            settings, build_embedding_provider(settings), index
        )
        service = RecommendationService(settings, search)
        async with session_scope(settings) as session:
            if args.recommendation_id is not None:
                outcome = await service.refresh_one(session, args.recommendation_id)
                if not args.quiet:
                    print(
                        f"Recommendation {args.recommendation_id}: "
                        f"{'ok' if outcome.succeeded else 'failed'} "
                        f"({outcome.found} results)"
                    )
                return 0 if outcome.succeeded else 1

            report = await service.refresh_due(
                session, limit=args.max_recommendations, force=args.force
            )
            if not args.quiet:
                print(
                    f"Refreshed {report.succeeded}/{report.total} recommendations "
                    f"({report.errors} errors)"
                )
            return 1 if report.errors else 0
    except BookmatchError as e:
        print(f"Refresh failed: {e}")
        return 2
    finally:
        await index.aclose()
        await dispose_engine()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
