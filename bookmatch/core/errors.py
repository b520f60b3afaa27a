"""
Error Taxonomy

Typed exceptions shared by the adapters and services.

    ValidationError         Malformed input (empty text, wrong dimension,
                            batch too large). Never retried.
    TransientProviderError  Network / timeout / 5xx from the embedding
                            provider or the vector index. Retried by the
                            next scheduled pass, never inline.
    NotFoundError           Missing catalog record or collection.
    ConsistencyError        Data that breaks an invariant (vector length
                            mismatch, provider answering with the wrong
                            number of items).
"""

from __future__ import annotations


class BookmatchError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(BookmatchError, ValueError):
    """Input rejected before any side effect took place."""


class TransientProviderError(BookmatchError, RuntimeError):
    """An external call failed; the operation is safe to retry later."""


class NotFoundError(BookmatchError, LookupError):
    """The requested record does not exist."""


class ConsistencyError(BookmatchError):
    """Stored or returned data violates an invariant."""
