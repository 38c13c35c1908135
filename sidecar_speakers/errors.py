"""Error types raised by the speaker identification core."""

from typing import Optional


class SpeakerIdError(Exception):
    """Base class for all speaker identification errors."""


class DimensionMismatch(SpeakerIdError, ValueError):
    """Two embeddings of different dimensionality were compared."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class InvalidEmbedding(SpeakerIdError, ValueError):
    """An embedding is empty or contains non-finite features."""


class PersistenceError(SpeakerIdError):
    """Reading or writing the speaker registry snapshot failed.

    Write failures are retryable: the in-memory registry was rolled back
    (or, in write-behind mode, still holds the pending state) and the same
    operation may be attempted again.
    """

    def __init__(self, message: str, retryable: bool = True, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.retryable = retryable
        self.cause = cause


class ExtractionError(SpeakerIdError):
    """The feature extractor could not produce an embedding for a segment."""
