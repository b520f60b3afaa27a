#!/usr/bin/env python3
"""
Seed Tags

Creates the default genre tags. Idempotent: existing tags (same name,
case-insensitive, or same slug) are left alone.

Usage:
    python scripts/seed_tags.py
"""

from __future__ import annotations

import asyncio
import os
import sys

# Required for direct script execution without package installation
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from bookmatch.core.config import get_settings
from bookmatch.core.database import dispose_engine, session_scope
from bookmatch.core.logging import setup_logging
from bookmatch.repositories.tags import TagRepository

DEFAULT_TAGS = [
    "Fantasy",
    "Science Fiction",
    "Romance",
    "Mystery",
    "Thriller",
    "Horror",
    "Historical Fiction",
    "Biography",
    "Memoir",
    "Self-Help",
    "Business",
    "Psychology",
    "Philosophy",
    "History",
    "Travel",
    "Cooking",
    "Art",
    "Music",
    "Poetry",
    "Drama",
    "Comedy",
    "Adventure",
    "Crime",
    "Western",
    "Young Adult",
    "Children",
    "Literary Fiction",
    "Classic",
    "Contemporary",
    "Dystopian",
    "Magical Realism",
    "Graphic Novel",
    "Short Stories",
    "Essay",
    "True Crime",
    "Health",
    "Fitness",
    "Spirituality",
]


async def main() -> None:
    settings = get_settings()
    setup_logging(settings)

    repository = TagRepository()
    created = 0
    try:
        async with session_scope(settings) as session:
            for name in DEFAULT_TAGS:
                _, was_created = await repository.get_or_create(session, name)
                created += was_created
    finally:
        await dispose_engine()

    print(f"Seeded {created} new tags ({len(DEFAULT_TAGS) - created} already present).")


if __name__ == "__main__":
    asyncio.run(main())
