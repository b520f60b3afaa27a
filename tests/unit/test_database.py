"""
Database Helper Unit Tests

Dialect selection for ON CONFLICT inserts.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from sqlalchemy.dialects.sqlite import Insert as SqliteInsert

from bookmatch.core.database import dialect_insert
from bookmatch.core.errors import ValidationError
from bookmatch.models.orm import Tag


@pytest.mark.asyncio
async def test_dialect_insert_follows_session_backend(session):
    assert isinstance(dialect_insert(session, Tag), SqliteInsert)


def test_dialect_insert_rejects_unsupported_backend():
    session = SimpleNamespace(bind=SimpleNamespace(dialect=SimpleNamespace(name="mysql")))

    with pytest.raises(ValidationError):
        dialect_insert(session, Tag)
