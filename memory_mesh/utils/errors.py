"""
Error taxonomy shared by the retrieval, relation and ingestion services.
"""


class MemoryMeshError(Exception):
    """Base exception for memory mesh errors."""
    pass


class InvalidQueryError(MemoryMeshError):
    """Raised when a search query is empty or malformed."""
    pass


class InvalidContentError(MemoryMeshError):
    """Raised when captured text is empty and cannot be ingested."""
    pass


class NotFoundError(MemoryMeshError):
    """Raised when an owner or memory does not exist."""
    pass


class DuplicateContentError(MemoryMeshError):
    """Signals that a memory with the same canonical fingerprint already exists.

    Not a failure: callers resolve it to the existing memory id.
    """

    def __init__(self, message: str, existing_memory_id: str = None):
        super().__init__(message)
        self.existing_memory_id = existing_memory_id


class TransientProviderError(MemoryMeshError):
    """Retryable provider failure (throttling, overload, 5xx)."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class FatalProviderError(MemoryMeshError):
    """Non-retryable provider failure, or retries exhausted."""

    def __init__(self, message: str, status_code: int = None, attempts: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class GraphConsistencyError(MemoryMeshError):
    """Raised for self-loops or relations crossing owners."""
    pass


class QueryCancelledError(MemoryMeshError):
    """Raised when a superseded query is aborted."""
    pass
