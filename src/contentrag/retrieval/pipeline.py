"""
Ingest and retrieval orchestration.

Ingest: chunk -> embed (batched, retried) -> one atomic store commit,
run in a worker thread so disk writes never block the event loop.
Retrieve: embed query -> full-scan cosine ranking -> top-K chunks,
optionally restricted to documents matching an author or tags filter.

Ingests of the same doc_id are serialised with a per-document lock;
different documents and all searches proceed independently.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from contentrag.errors import (
    DocumentNotFound,
    InvalidConfig,
    OperationTimeout,
    PermanentEmbeddingError,
    TransientEmbeddingError,
)
from contentrag.retrieval.chunker import chunk_text, validate_chunking
from contentrag.retrieval.embeddings import Embedder
from contentrag.retrieval.ranker import RankedChunk
from contentrag.retrieval.store import (
    ChunkStore,
    ChunkWithEmbedding,
    DocumentFilter,
    DocumentRecord,
    StoredChunk,
    StoreStats,
)
from contentrag.tracing import add_span_attributes, traced

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    """Result of ingesting one document."""

    doc_id: str
    chunks_stored: int
    generation: int


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient embedding failures."""

    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidConfig(f"max_attempts must be >= 1, got {self.max_attempts}")


class RAGService:
    """
    Retrieval-augmented generation core: document ingest and chunk retrieval.

    Example:
        >>> service = RAGService(store, embedder, chunk_size=400, overlap=50)
        >>> await service.ingest("doc-1", "Brand voice", None, text)
        IngestResult(doc_id='doc-1', chunks_stored=3, generation=1)
        >>> await service.retrieve("tone for LinkedIn posts", top_k=5)
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: Embedder,
        chunk_size: int = 400,
        overlap: int = 50,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            store: Retrieval store receiving documents and chunk vectors
            embedder: Embedding capability (constructed with resolved config)
            chunk_size: Maximum characters per chunk
            overlap: Characters shared between consecutive chunks
            retry_policy: Backoff for transient embedding failures

        Raises:
            InvalidConfig: If the chunking parameters are invalid
        """
        validate_chunking(chunk_size, overlap)
        self.store = store
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.retry_policy = retry_policy or RetryPolicy()
        self._doc_locks: dict[str, asyncio.Lock] = {}
        self._doc_lock_users: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------
    async def ingest(
        self,
        doc_id: Optional[str],
        title: Optional[str],
        url: Optional[str],
        raw_text: str,
        timeout: float | None = None,
        *,
        author: Optional[str] = None,
        tags: Sequence[str] | None = None,
    ) -> IngestResult:
        """
        Chunk, embed and store a document, replacing any previous version.

        Either every chunk of the new version is stored or nothing changes:
        embedding failures and timeouts leave the previous chunk set intact.
        The timeout covers waiting for the document lock and embedding; once
        all vectors are ready the commit runs to completion.

        Args:
            doc_id: Document identifier (generated when None or empty)
            title: Display name
            url: Source locator
            raw_text: Full document text
            timeout: Seconds before the ingest is abandoned
            author: Document author, used for filtering
            tags: Document tags, used for filtering

        Returns:
            IngestResult with the number of chunks stored

        Raises:
            InvalidConfig: If the chunking parameters are invalid
            EmbeddingProviderError: If embedding fails (after retries when transient)
            StorageError: If the store rejects the chunk set
            OperationTimeout: If the timeout expires
        """
        doc_id = doc_id or uuid.uuid4().hex
        return await self._ingest(doc_id, title, url, raw_text, author, tuple(tags or ()), timeout)

    async def reprocess(self, doc_id: str, timeout: float | None = None) -> IngestResult:
        """
        Re-chunk and re-embed a stored document with the current parameters.

        Raises:
            DocumentNotFound: If the document does not exist
        """
        record = self.store.get_document(doc_id)
        if record is None:
            raise DocumentNotFound(doc_id)
        return await self.ingest(
            record.doc_id,
            record.title,
            record.url,
            record.raw_text,
            timeout=timeout,
            author=record.author,
            tags=record.tags,
        )

    @traced("rag.ingest")
    async def _ingest(
        self,
        doc_id: str,
        title: Optional[str],
        url: Optional[str],
        raw_text: str,
        author: Optional[str],
        tags: tuple[str, ...],
        timeout: float | None,
    ) -> IngestResult:
        operation = f"ingest of {doc_id}"
        deadline = _deadline(timeout)
        async with self._doc_lock(doc_id, deadline, operation):
            pairs = await self._with_timeout(
                self._embed_chunks(doc_id, raw_text), _remaining(deadline), operation
            )
            # The worker thread finishes the commit even if this task is cancelled
            result = await asyncio.to_thread(
                self.store.upsert_document,
                doc_id,
                title,
                url,
                raw_text,
                pairs,
                author=author,
                tags=tags,
            )

        logger.info(
            f"Ingested document {doc_id}: {result.chunks_stored} chunks "
            f"(chunk_size={self.chunk_size}, overlap={self.overlap})"
        )
        return IngestResult(
            doc_id=result.doc_id,
            chunks_stored=result.chunks_stored,
            generation=result.generation,
        )

    async def _embed_chunks(self, doc_id: str, raw_text: str) -> list[ChunkWithEmbedding]:
        chunks = chunk_text(raw_text, self.chunk_size, self.overlap)
        add_span_attributes(doc_id=doc_id, chunks=len(chunks), characters=len(raw_text))
        if not chunks:
            return []
        embeddings = await self._embed([chunk.content for chunk in chunks])
        return list(zip(chunks, embeddings))

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------
    async def retrieve(
        self,
        query: str,
        top_k: int,
        min_score: float | None = None,
        timeout: float | None = None,
        *,
        author: Optional[str] = None,
        tags: Sequence[str] | None = None,
    ) -> list[RankedChunk]:
        """
        Embed a query and return the top_k most similar stored chunks.

        Args:
            query: Natural language query
            top_k: Maximum number of results (>= 1, no default here)
            min_score: Drop results scoring below this value
            timeout: Seconds before the search is abandoned
            author: Only search documents whose author contains this text
            tags: Only search documents carrying at least one of these tags

        Returns:
            Ranked chunks; empty when the store is empty

        Raises:
            InvalidConfig: If top_k < 1 or the query is empty
            DimensionMismatch: If the query vector does not match the store
            OperationTimeout: If the timeout expires
        """
        if top_k < 1:
            raise InvalidConfig(f"top_k must be >= 1, got {top_k}")
        if not query or not query.strip():
            raise InvalidConfig("query must not be empty")
        return await self._with_timeout(
            self._retrieve(query, top_k, min_score, _document_filter(author, tags)),
            timeout,
            "search",
        )

    @traced("rag.retrieve")
    async def _retrieve(
        self,
        query: str,
        top_k: int,
        min_score: float | None,
        where: Optional[DocumentFilter],
    ) -> list[RankedChunk]:
        if self.store.path is not None:
            await asyncio.to_thread(self.store.refresh)
        if self.store.size == 0:
            logger.debug("Search against empty store")
            return []

        query_embedding = (await self._embed([query]))[0]
        results = self.store.search(query_embedding, top_k=top_k, min_score=min_score, where=where)
        add_span_attributes(top_k=top_k, results=len(results), filtered=where is not None)
        logger.info(f"Retrieved {len(results)} chunks (top_k={top_k})")
        return results

    # ------------------------------------------------------------------
    # Document management
    # ------------------------------------------------------------------
    def get_document(self, doc_id: str) -> DocumentRecord:
        """
        Raises:
            DocumentNotFound: If the document does not exist
        """
        record = self.store.get_document(doc_id)
        if record is None:
            raise DocumentNotFound(doc_id)
        return record

    def list_documents(
        self,
        limit: int | None = None,
        offset: int = 0,
        *,
        author: Optional[str] = None,
        tags: Sequence[str] | None = None,
    ) -> list[DocumentRecord]:
        return self.store.list_documents(
            limit=limit, offset=offset, where=_document_filter(author, tags)
        )

    def get_chunks(self, doc_id: str) -> list[StoredChunk]:
        """
        Chunks of an existing document; empty when it has none.

        Raises:
            DocumentNotFound: If the document does not exist
        """
        self.get_document(doc_id)
        try:
            return self.store.get_chunks_by_doc(doc_id)
        except DocumentNotFound:
            return []

    async def delete_document(self, doc_id: str) -> bool:
        """Delete a document, waiting for any in-flight ingest of it."""
        async with self._doc_lock(doc_id):
            return await asyncio.to_thread(self.store.delete_document, doc_id)

    def stats(self) -> StoreStats:
        return self.store.stats()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _embed(self, texts: list[str]) -> NDArray[np.float32]:
        """Embed texts, retrying transient provider errors with backoff."""
        policy = self.retry_policy
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientEmbeddingError),
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.initial_delay,
                min=policy.initial_delay,
                max=policy.max_delay,
            ),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                embeddings = await self.embedder.aembed_texts(texts)

        vectors = np.asarray(embeddings, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise PermanentEmbeddingError(
                f"Embedder returned {vectors.shape[0] if vectors.ndim else 0} vectors "
                f"for {len(texts)} texts"
            )
        if not np.all(np.isfinite(vectors)):
            raise PermanentEmbeddingError("Embedder returned non-finite values")
        return vectors

    async def _with_timeout(self, coro, timeout: float | None, operation: str):
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Timed out after {timeout}s: {operation}")
            raise OperationTimeout(f"{operation} did not finish within {timeout}s") from e

    @asynccontextmanager
    async def _doc_lock(
        self,
        doc_id: str,
        deadline: float | None = None,
        operation: str = "",
    ) -> AsyncIterator[None]:
        """Serialise writers of one document; the lock is dropped when unused."""
        lock = self._doc_locks.setdefault(doc_id, asyncio.Lock())
        self._doc_lock_users[doc_id] = self._doc_lock_users.get(doc_id, 0) + 1
        try:
            await self._with_timeout(lock.acquire(), _remaining(deadline), operation)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._doc_lock_users[doc_id] -= 1
            if self._doc_lock_users[doc_id] == 0:
                del self._doc_lock_users[doc_id]
                del self._doc_locks[doc_id]


def _deadline(timeout: float | None) -> float | None:
    if timeout is None:
        return None
    return asyncio.get_running_loop().time() + timeout


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return max(deadline - asyncio.get_running_loop().time(), 0.0)


def _document_filter(author: Optional[str], tags: Sequence[str] | None) -> Optional[DocumentFilter]:
    where = DocumentFilter(author=author or None, tags=tuple(t for t in tags or () if t))
    return None if where.is_empty else where


def _log_retry(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"Transient embedding failure (attempt {retry_state.attempt_number}), "
        f"retrying in {delay:.1f}s: {exception}"
    )
