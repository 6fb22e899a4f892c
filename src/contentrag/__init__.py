"""
contentrag: Retrieval-augmented generation core for a content-marketing pipeline

This package ingests knowledge documents, splits them into overlapping
chunks, embeds them through a hosted embedding provider and retrieves the
most relevant chunks to ground research briefs and claims with citations.

Key Components:
    - retrieval: Chunking, embedding adapters, chunk store, ranking, pipeline
    - api: FastAPI REST endpoints (POST /ingest, GET /search, documents)
    - tracing: Arize Phoenix observability integration

Example:
    >>> from contentrag.retrieval.resources import get_rag_service
    >>> service = get_rag_service()
    >>> await service.ingest("brand-guide", "Brand guide", None, text)
    >>> results = await service.retrieve("tone of voice for newsletters", top_k=5)
"""

__version__ = "0.1.0"

from contentrag.config import settings

__all__ = [
    "__version__",
    "settings",
]
