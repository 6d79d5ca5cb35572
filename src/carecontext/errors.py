"""Exception types raised at the external-collaborator seams."""
from __future__ import annotations


class CareContextError(Exception):
    """Base class for errors raised by carecontext components."""


class EmbeddingError(CareContextError):
    """The embedding backend failed, timed out, or returned an unusable vector."""


class GenerationError(CareContextError):
    """The generation backend failed, timed out, or stalled while streaming."""


class StorageUnavailableError(CareContextError):
    """A durable store could not be reached or has been closed."""


class DimensionMismatchError(CareContextError, ValueError):
    """Embeddings written to the vector store disagree on dimensionality."""

    def __init__(self, expected: int, actual: int, chunk_id: str = ""):
        self.expected = int(expected)
        self.actual = int(actual)
        self.chunk_id = str(chunk_id or "")
        detail = f" (chunk {self.chunk_id})" if self.chunk_id else ""
        super().__init__(f"embedding dimension {self.actual} does not match store dimension {self.expected}{detail}")
