"""
Document retrieval components for the RAG pipeline.

Components:
    - chunker: Split documents into offset-exact, overlapping chunks
    - embeddings: Embedder capability and provider adapters
    - store: Document/chunk-vector storage with atomic generation swaps
    - ranker: Cosine similarity top-K ranking
    - pipeline: Ingest and retrieve orchestration
"""

from contentrag.retrieval.chunker import Chunk, chunk_text, iter_chunks
from contentrag.retrieval.embeddings import (
    Embedder,
    GeminiEmbedder,
    HuggingFaceEmbedder,
    create_embedder,
)
from contentrag.retrieval.pipeline import IngestResult, RAGService, RetryPolicy
from contentrag.retrieval.ranker import RankedChunk, cosine_similarity, rank
from contentrag.retrieval.store import ChunkStore, DocumentFilter, DocumentRecord, StoredChunk

__all__ = [
    "Chunk",
    "chunk_text",
    "iter_chunks",
    "Embedder",
    "GeminiEmbedder",
    "HuggingFaceEmbedder",
    "create_embedder",
    "IngestResult",
    "RAGService",
    "RetryPolicy",
    "RankedChunk",
    "cosine_similarity",
    "rank",
    "ChunkStore",
    "DocumentFilter",
    "DocumentRecord",
    "StoredChunk",
]
