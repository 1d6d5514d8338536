"""Custom exception classes for chunking, retrieval and summarization."""
from typing import Optional


class SummarizerError(Exception):
    """Base exception for summarizer errors."""
    pass


class InputError(SummarizerError, ValueError):
    """Raised when a caller passes invalid input."""
    pass


class DimensionMismatchError(InputError):
    """Raised when a vector does not match the store's dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")


class InvalidLimitError(InputError):
    """Raised when a result limit is not a positive integer."""
    pass


class InvalidConfigError(InputError):
    """Raised when chunking, retrieval or store configuration is malformed."""
    pass


class StoreError(SummarizerError):
    """Base exception for embedding store errors."""
    pass


class DatabaseClosedError(StoreError):
    """Raised when the embedding store is used while closed."""

    def __init__(self, message: str = "Database is closed"):
        super().__init__(message)


class IndexNotReadyError(StoreError):
    """Raised when a search needs a built index and none is ready."""
    pass


class BackendError(SummarizerError):
    """Raised when the LLM or embedding backend call fails."""
    pass


class BackendUnavailableError(BackendError):
    """Raised when the backend cannot be reached or rejects the request."""
    pass


class BackendTimeoutError(BackendError):
    """Raised when the backend does not answer within the timeout."""

    def __init__(self, message: str = "LLM backend unresponsive"):
        super().__init__(message)


class ResponseParseError(SummarizerError):
    """Raised when a backend response cannot be parsed into the expected shape."""
    pass


class ChunkingError(SummarizerError):
    """Raised when a document cannot be split into chunks."""
    pass


class EmbeddingError(SummarizerError):
    """Raised when embedding generation fails."""

    def __init__(self, message: str, document_id: Optional[str] = None, chunk_id: Optional[str] = None):
        self.document_id = document_id
        self.chunk_id = chunk_id
        super().__init__(message)


class SummarizationError(SummarizerError):
    """Raised when a summarization run cannot produce any result."""

    def __init__(self, message: str, document_id: str, stage: str):
        self.document_id = document_id
        self.stage = stage
        super().__init__(f"[{stage}] {message} (document_id={document_id})")
