"""
Embedding generation via hosted provider APIs.

Defines the Embedder capability consumed by the pipeline and the HTTP
adapters that implement it. Adapters translate provider failures into
TransientEmbeddingError (retry with backoff) or PermanentEmbeddingError
(surface immediately); retrying itself is left to the caller.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol, runtime_checkable

import httpx
import numpy as np
from numpy.typing import NDArray

from contentrag.config import Settings
from contentrag.errors import (
    EmbeddingProviderError,
    InvalidConfig,
    PermanentEmbeddingError,
    TransientEmbeddingError,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

# A 429 whose body names one of these limits is a spent quota, not a rate limit
QUOTA_EXHAUSTED_MARKERS = ("perday", "per day", "permonth", "per month", "insufficient_quota")


@runtime_checkable
class Embedder(Protocol):
    """Capability mapping texts to fixed-length vectors, one per text, in order."""

    dimension: int

    async def aembed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """Return an array of shape (len(texts), dimension)."""
        ...


class HTTPEmbedder(ABC):
    """
    Shared batching, transport and error classification for HTTP providers.

    Subclasses describe how a batch becomes a request and how the response
    body becomes a list of vectors.
    """

    provider_name = "http"

    def __init__(
        self,
        model: str,
        api_key: Optional[str],
        dimension: int,
        batch_size: int = 32,
        timeout: float = 30.0,
    ) -> None:
        """
        Initialize the embedder.

        Args:
            model: Provider model ID
            api_key: Provider API key
            dimension: Expected vector dimension
            batch_size: Number of texts per API call
            timeout: Per-request timeout in seconds
        """
        if batch_size <= 0:
            raise InvalidConfig(f"batch_size must be positive, got {batch_size}")
        self.model = model
        self.api_key = api_key
        self.dimension = dimension
        self.batch_size = batch_size
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------
    @abstractmethod
    def _request(self, texts: list[str]) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json payload) for one batch."""

    @abstractmethod
    def _parse_vectors(self, body: Any) -> list[list[float]]:
        """Extract one vector per input text from a response body."""

    def _quota_exhausted(self, response: httpx.Response) -> bool:
        """Whether a 429 reports a spent quota rather than a short-term rate limit."""
        text = response.text.lower()
        return any(marker in text for marker in QUOTA_EXHAUSTED_MARKERS)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def embed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of texts to embed

        Returns:
            Array of shape (len(texts), dimension)
        """
        if not texts:
            return np.empty((0, self.dimension), dtype=np.float32)

        with httpx.Client(timeout=self.timeout) as client:
            batches = [
                self._embed_batch_sync(client, texts[i : i + self.batch_size])
                for i in range(0, len(texts), self.batch_size)
            ]
        return np.vstack(batches)

    async def aembed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Async version of embed_texts; batches are sent concurrently.

        Args:
            texts: List of texts to embed

        Returns:
            Array of shape (len(texts), dimension)
        """
        if not texts:
            return np.empty((0, self.dimension), dtype=np.float32)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            tasks = [
                asyncio.ensure_future(
                    self._embed_batch_async(client, texts[i : i + self.batch_size])
                )
                for i in range(0, len(texts), self.batch_size)
            ]
            try:
                batch_results = await asyncio.gather(*tasks)
            except BaseException:
                # One failed batch fails the call: stop the rest before the client closes
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        return np.vstack(batch_results)

    def embed_query(self, query: str) -> NDArray[np.float32]:
        """
        Generate embedding for a single query.

        Returns:
            Array of shape (dimension,)
        """
        return self.embed_texts([query])[0]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _embed_batch_sync(self, client: httpx.Client, texts: list[str]) -> NDArray[np.float32]:
        url, headers, payload = self._request(texts)
        try:
            response = client.post(url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise self._transport_error(e) from e
        return self._handle_response(response, len(texts))

    async def _embed_batch_async(
        self, client: httpx.AsyncClient, texts: list[str]
    ) -> NDArray[np.float32]:
        url, headers, payload = self._request(texts)
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise self._transport_error(e) from e
        return self._handle_response(response, len(texts))

    def _transport_error(self, error: httpx.TransportError) -> TransientEmbeddingError:
        return TransientEmbeddingError(
            f"{self.provider_name} embedding request failed: {error!r}"
        )

    def _handle_response(self, response: httpx.Response, expected: int) -> NDArray[np.float32]:
        """
        Validate a provider response and convert it to an array.

        Raises:
            TransientEmbeddingError: Rate limit or server-side failure
            PermanentEmbeddingError: Client error, exhausted quota or malformed payload
        """
        status = response.status_code
        if status == 429 and self._quota_exhausted(response):
            raise PermanentEmbeddingError(
                f"{self.provider_name} quota exhausted (HTTP 429): {_preview(response)}",
                status_code=status,
            )
        if status in TRANSIENT_STATUS_CODES:
            raise TransientEmbeddingError(
                f"{self.provider_name} returned HTTP {status}: {_preview(response)}",
                status_code=status,
            )
        if status >= 400:
            raise PermanentEmbeddingError(
                f"{self.provider_name} rejected the request with HTTP {status}: "
                f"{_preview(response)}",
                status_code=status,
            )

        try:
            vectors = self._parse_vectors(response.json())
            embeddings = np.asarray(vectors, dtype=np.float32)
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentEmbeddingError(
                f"{self.provider_name} returned a malformed embedding payload: {e}"
            ) from e

        if embeddings.ndim != 2 or embeddings.shape[0] != expected:
            raise PermanentEmbeddingError(
                f"{self.provider_name} returned {embeddings.shape[0] if embeddings.ndim else 0} "
                f"vectors for {expected} texts"
            )
        if embeddings.shape[1] != self.dimension:
            raise PermanentEmbeddingError(
                f"{self.provider_name} returned vectors of dimension {embeddings.shape[1]}, "
                f"expected {self.dimension}"
            )
        return self._normalize_embeddings(embeddings)

    def _normalize_embeddings(self, embeddings: NDArray[np.float32]) -> NDArray[np.float32]:
        """
        Normalize embeddings to unit length for cosine similarity.

        Args:
            embeddings: Array of shape (n, dimension)

        Returns:
            Normalized embeddings of same shape
        """
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        # Zero vectors stay zero
        norms = np.where(norms == 0, 1, norms)
        return (embeddings / norms).astype(np.float32)


class HuggingFaceEmbedder(HTTPEmbedder):
    """
    Generate embeddings using the HuggingFace Inference API.

    Example:
        >>> embedder = HuggingFaceEmbedder(model="sentence-transformers/all-MiniLM-L6-v2",
        ...                                api_key="hf_...", dimension=384)
        >>> vectors = embedder.embed_texts(["Content pillars for B2B SaaS"])
        >>> vectors.shape
        (1, 384)
    """

    provider_name = "huggingface"
    base_url = "https://api-inference.huggingface.co/pipeline/feature-extraction"

    def _request(self, texts: list[str]) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return f"{self.base_url}/{self.model}", headers, {"inputs": texts}

    def _parse_vectors(self, body: Any) -> list[list[float]]:
        if not isinstance(body, list):
            raise ValueError(f"expected a list of vectors, got {type(body).__name__}")
        return body


class GeminiEmbedder(HTTPEmbedder):
    """
    Generate embeddings using the Google Gemini batchEmbedContents endpoint.

    Example:
        >>> embedder = GeminiEmbedder(model="text-embedding-004", api_key="...", dimension=768)
        >>> embedder.embed_query("Quarterly newsletter ideas").shape
        (768,)
    """

    provider_name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def _request(self, texts: list[str]) -> tuple[str, dict[str, str], dict[str, Any]]:
        model_ref = self.model if self.model.startswith("models/") else f"models/{self.model}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        payload = {
            "requests": [
                {"model": model_ref, "content": {"parts": [{"text": text}]}}
                for text in texts
            ]
        }
        return f"{self.base_url}/{model_ref.removeprefix('models/')}:batchEmbedContents", headers, payload

    def _parse_vectors(self, body: Any) -> list[list[float]]:
        return [item["values"] for item in body["embeddings"]]

    def _quota_exhausted(self, response: httpx.Response) -> bool:
        # Per-minute and per-day limits both arrive as RESOURCE_EXHAUSTED;
        # the violated quotaId tells them apart
        try:
            body = response.json()
        except ValueError:
            return super()._quota_exhausted(response)
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict) or error.get("status") != "RESOURCE_EXHAUSTED":
            return False
        return super()._quota_exhausted(response)


def create_embedder(config: Settings) -> HTTPEmbedder:
    """
    Create an embedder from resolved configuration.

    Args:
        config: Settings carrying provider, model, key and dimension

    Returns:
        Adapter implementing the Embedder capability

    Raises:
        EmbeddingProviderError: If the provider is unknown
    """
    common = {
        "model": config.embedding_model,
        "dimension": config.embedding_dimension,
        "batch_size": config.embedding_batch_size,
        "timeout": config.embedding_timeout,
    }
    if config.embedding_provider == "huggingface":
        return HuggingFaceEmbedder(api_key=config.hf_api_key_value, **common)
    if config.embedding_provider == "gemini":
        return GeminiEmbedder(api_key=config.gemini_api_key_value, **common)
    raise EmbeddingProviderError(f"Unknown embedding provider: {config.embedding_provider}")


def _preview(response: httpx.Response, limit: int = 200) -> str:
    text = response.text
    return text if len(text) <= limit else text[:limit] + "..."
