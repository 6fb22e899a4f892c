"""
Pytest configuration and shared fixtures.

Provides common fixtures for:
    - Configuration with test values
    - A deterministic in-process embedder (no network)
    - Sample marketing documents
    - Stores and services wired to temporary directories
"""

import asyncio
import hashlib
import re
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

from contentrag.errors import PermanentEmbeddingError, TransientEmbeddingError

_TOKEN = re.compile(r"\w+")


class FakeEmbedder:
    """
    Bag-of-words embedder hashing tokens into a fixed number of buckets.

    Identical texts map to identical vectors, texts sharing words score
    higher than unrelated ones. Failure injection and call tracking make
    retry and concurrency behaviour observable.
    """

    def __init__(
        self,
        dimension: int = 256,
        transient_failures: int = 0,
        permanent_failure: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.dimension = dimension
        self.transient_failures = transient_failures
        self.permanent_failure = permanent_failure
        self.delay = delay
        self.calls: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in _TOKEN.findall(text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        return vector

    async def aembed_texts(self, texts: list[str]) -> np.ndarray:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientEmbeddingError("rate limited", status_code=429)
            if self.permanent_failure:
                raise PermanentEmbeddingError("invalid api key", status_code=401)
            if not texts:
                return np.empty((0, self.dimension), dtype=np.float32)
            return np.vstack([self.vector(text) for text in texts])
        finally:
            self.in_flight -= 1


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def mock_settings():
    """Provide test settings without requiring .env file."""
    with patch.dict(
        "os.environ",
        {
            "HF_API_KEY": "test-api-key",
            "EMBEDDING_PROVIDER": "huggingface",
            "EMBEDDING_MODEL": "sentence-transformers/all-MiniLM-L6-v2",
            "CHUNK_SIZE": "512",
            "CHUNK_OVERLAP": "64",
            "ENABLE_TRACING": "false",
        },
    ):
        from contentrag.config import Settings
        yield Settings()


# =============================================================================
# Embedder / Store / Service Fixtures
# =============================================================================

@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    """Deterministic 256-dimensional embedder."""
    return FakeEmbedder()


@pytest.fixture
def make_embedder():
    """Factory for embedders with injected failures or latency."""
    return FakeEmbedder


@pytest.fixture
def tmp_store_dir(tmp_path: Path) -> Path:
    """Provide temporary directory for a persisted store."""
    store_dir = tmp_path / "store"
    store_dir.mkdir()
    return store_dir


@pytest.fixture
def memory_store():
    """In-memory chunk store."""
    from contentrag.retrieval.store import ChunkStore

    return ChunkStore()


@pytest.fixture
def no_wait_policy():
    """Retry policy without backoff delays."""
    from contentrag.retrieval.pipeline import RetryPolicy

    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def rag_service(memory_store, fake_embedder, no_wait_policy):
    """Service over an in-memory store with chunk_size=400, overlap=50."""
    from contentrag.retrieval.pipeline import RAGService

    return RAGService(
        memory_store,
        fake_embedder,
        chunk_size=400,
        overlap=50,
        retry_policy=no_wait_policy,
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def numbered_text() -> str:
    """1000 characters of distinct numbered words."""
    return " ".join(f"word{i}" for i in range(200))[:1000]


@pytest.fixture
def sample_documents() -> dict[str, str]:
    """Provide sample content-marketing knowledge documents."""
    return {
        "brand-voice": """# Brand Voice

## Tone

Our tone is confident, warm and direct. We avoid jargon and speak to
marketing managers as peers. Sentences stay short.

## Vocabulary

Prefer "customers" over "users". Never describe the product as "cheap";
say "affordable" instead.
""",
        "linkedin-playbook": """# LinkedIn Playbook

## Post Format

LinkedIn posts open with a one-line hook, followed by three short
paragraphs and a question that invites comments. Keep posts under
1300 characters and use at most three hashtags.

## Cadence

Publish on Tuesday and Thursday mornings.
""",
        "newsletter-guide": """# Newsletter Guide

The monthly newsletter features one customer story, two product updates
and a curated reading list. Subject lines stay below fifty characters.
""",
    }
