"""
Typed errors for the knowledge engine.

Every failure the engine can report carries an :class:`ErrorKind` so callers
can tell "could not execute" apart from "nothing matched" (an empty result,
never an error).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    EMPTY_INPUT = "EmptyInput"
    CHUNKING_PRODUCED_NOTHING = "ChunkingProducedNothing"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    DIMENSION_MISMATCH = "DimensionMismatch"
    STORE_UNAVAILABLE = "StoreUnavailable"
    ENTRY_NOT_FOUND = "EntryNotFound"
    # Reported as result warnings, never raised.
    INVALID_METHOD = "InvalidMethod"
    SCAN_LIMIT_EXCEEDED = "ScanLimitExceeded"
    SEARCH_FAILED = "SearchFailed"
    CANCELLED = "Cancelled"


class KnowledgeBaseError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.SEARCH_FAILED

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message or self.__class__.__name__)
        if kind is not None:
            self.kind = kind


class EmptyInputError(KnowledgeBaseError):
    """Blank text to ingest or an empty query."""

    kind = ErrorKind.EMPTY_INPUT


class ChunkingProducedNothingError(KnowledgeBaseError):
    kind = ErrorKind.CHUNKING_PRODUCED_NOTHING


class ProviderUnavailableError(KnowledgeBaseError):
    """The embedding provider could not be reached or returned garbage."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE


class DimensionMismatchError(KnowledgeBaseError):
    """A vector's length differs from the configured dimension."""

    kind = ErrorKind.DIMENSION_MISMATCH

    def __init__(self, expected: int, actual: int, message: str = ""):
        super().__init__(
            message or f"Expected {expected}-dimensional vector, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class StoreUnavailableError(KnowledgeBaseError):
    kind = ErrorKind.STORE_UNAVAILABLE


class EntryNotFoundError(KnowledgeBaseError):
    kind = ErrorKind.ENTRY_NOT_FOUND

    def __init__(self, entry_id: str):
        super().__init__(f"Knowledge entry not found: {entry_id}")
        self.entry_id = entry_id


class SearchExecutionError(KnowledgeBaseError):
    """One or more concurrent search branches failed.

    ``errors`` holds every branch failure, in branch order.
    """

    kind = ErrorKind.SEARCH_FAILED

    def __init__(self, message: str, errors: Optional[list[BaseException]] = None):
        super().__init__(message)
        self.errors: list[BaseException] = list(errors or [])


class OperationCancelledError(KnowledgeBaseError):
    kind = ErrorKind.CANCELLED
