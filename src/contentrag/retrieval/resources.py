"""
Singleton resource management for the store, embedder and service.

Provides cached instances of resources that should only be created once
per application lifecycle. Uses the @lru_cache pattern (same as the
config.py settings singleton) so the API and CLI share one store.

Usage:
    # In API handlers
    service = get_rag_service()  # First call builds, subsequent calls instant

    # In API startup (explicit initialization)
    status = initialize_resources()

    # In tests (reset cache)
    clear_resource_cache()
"""

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

from contentrag.config import settings

if TYPE_CHECKING:
    from contentrag.retrieval.embeddings import HTTPEmbedder
    from contentrag.retrieval.pipeline import RAGService
    from contentrag.retrieval.store import ChunkStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_chunk_store() -> "ChunkStore":
    """
    Get or create the global chunk store.

    Loads the persisted snapshot from settings.store_dir when persistence
    is enabled, otherwise starts an in-memory store.

    Raises:
        StorageError: If the persisted snapshot cannot be read
        DimensionMismatch: If persisted vectors disagree with the configured dimension
    """
    from contentrag.retrieval.store import ChunkStore

    if not settings.persist_store:
        logger.info("Using in-memory chunk store (persistence disabled)")
        return ChunkStore(dimension=settings.embedding_dimension)

    logger.info(f"Loading chunk store from {settings.store_dir}")
    store = ChunkStore.from_disk(settings.store_dir, dimension=settings.embedding_dimension)
    logger.info(f"Chunk store ready ({store.size} chunks)")
    return store


@lru_cache(maxsize=1)
def get_embedder() -> "HTTPEmbedder":
    """Get or create the global embedder for the configured provider."""
    from contentrag.retrieval.embeddings import create_embedder

    logger.info(
        f"Initializing {settings.embedding_provider} embedder for model: "
        f"{settings.embedding_model}"
    )
    return create_embedder(settings)


@lru_cache(maxsize=1)
def get_rag_service() -> "RAGService":
    """Get or create the global RAGService wired to the cached store and embedder."""
    from contentrag.retrieval.pipeline import RAGService, RetryPolicy

    return RAGService(
        store=get_chunk_store(),
        embedder=get_embedder(),
        chunk_size=settings.chunk_size,
        overlap=settings.chunk_overlap,
        retry_policy=RetryPolicy(
            max_attempts=settings.embed_max_attempts,
            initial_delay=settings.embed_backoff_initial,
            max_delay=settings.embed_backoff_max,
        ),
    )


def initialize_resources() -> dict[str, bool]:
    """
    Explicitly initialize all resources for eager loading.

    Called at API server startup so a broken store fails fast.

    Returns:
        dict: Status of each resource initialization

    Raises:
        RuntimeError: If any resource fails to initialize
    """
    status = {}

    try:
        get_chunk_store()
        status["store"] = True
    except Exception as e:
        status["store"] = False
        raise RuntimeError(f"Failed to load chunk store: {e}") from e

    try:
        embedder = get_embedder()
        status["embedder"] = embedder.api_key is not None
    except Exception as e:
        status["embedder"] = False
        raise RuntimeError(f"Failed to create embedder: {e}") from e

    get_rag_service()
    return status


def clear_resource_cache() -> None:
    """
    Clear all cached resources.

    Used in tests to reset state between test cases.
    """
    get_rag_service.cache_clear()
    get_embedder.cache_clear()
    get_chunk_store.cache_clear()
    logger.debug("Resource cache cleared")
