"""
Error taxonomy for the RAG core.

Every error raised by chunking, embedding, storage and ranking derives
from ContentRAGError so the HTTP and CLI layers can map them uniformly.

Hierarchy:
    ContentRAGError
        InvalidConfig
        EmbeddingProviderError
            TransientEmbeddingError
            PermanentEmbeddingError
        StorageError
            DimensionMismatch
        DocumentNotFound
        OperationTimeout
"""


class ContentRAGError(Exception):
    """Base class for all contentrag errors."""

    code: str = "internal_error"
    retryable: bool = False


class InvalidConfig(ContentRAGError):
    """Chunking or query parameters are invalid. The caller must fix them."""

    code = "invalid_config"


class EmbeddingProviderError(ContentRAGError):
    """The embedding provider failed to return vectors."""

    code = "embedding_provider_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientEmbeddingError(EmbeddingProviderError):
    """Rate limit, timeout or network failure. Safe to retry."""

    code = "embedding_provider_unavailable"
    retryable = True


class PermanentEmbeddingError(EmbeddingProviderError):
    """Invalid credentials, malformed input or exhausted quota."""

    code = "embedding_provider_rejected"


class StorageError(ContentRAGError):
    """Persistence failure in the retrieval store."""

    code = "storage_error"


class DimensionMismatch(StorageError):
    """Embedding size is inconsistent with the stored collection."""

    code = "dimension_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: collection uses {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class DocumentNotFound(ContentRAGError):
    """No stored chunks (or no document) exist for the requested doc_id."""

    code = "document_not_found"

    def __init__(self, doc_id: str) -> None:
        super().__init__(f"Document not found: {doc_id}")
        self.doc_id = doc_id


class OperationTimeout(ContentRAGError):
    """An ingest or search did not finish within the caller's timeout."""

    code = "timeout"
    retryable = True
