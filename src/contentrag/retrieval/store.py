"""
Document and chunk-vector storage for retrieval.

The store keeps an immutable snapshot of every document and its current
chunk generation. Writers build a new snapshot under a lock and swap the
reference, so readers see either the old or the new chunk set of a
document and never a mix of both.

When a directory is configured, each document version is persisted once
and never rewritten:
    - doc-<hash>-<version>.json: document record and chunk metadata
    - doc-<hash>-<version>.index: FAISS flat index holding the raw vectors
    - manifest.json: atomically replaced map of doc_id to live files
A commit writes only the documents it changed plus the manifest, then
removes files no longer referenced. Commits hold an inter-process lock on
the directory and first pick up versions written by other processes, so
several processes can share one store directory.
"""

import hashlib
import json
import logging
import os
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import cached_property
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional

import faiss
import numpy as np
from filelock import FileLock, Timeout
from numpy.typing import ArrayLike, NDArray

from contentrag.errors import DimensionMismatch, DocumentNotFound, StorageError
from contentrag.retrieval.chunker import Chunk
from contentrag.retrieval.ranker import RankedChunk, rank

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
LOCK_NAME = "store.lock"
DOCUMENT_FILE_PREFIX = "doc-"

ChunkWithEmbedding = tuple[Chunk, ArrayLike]


@dataclass(frozen=True)
class DocumentRecord:
    """A unit of ingested knowledge."""

    doc_id: str
    title: Optional[str]
    url: Optional[str]
    raw_text: str
    author: Optional[str] = None
    tags: tuple[str, ...] = ()
    chunk_count: int = 0
    generation: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class DocumentFilter:
    """
    Metadata constraints on documents.

    author matches as a case-insensitive substring; tags match when the
    document carries at least one of them.
    """

    author: Optional[str] = None
    tags: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.author and not self.tags

    def matches(self, record: DocumentRecord) -> bool:
        if self.author:
            if record.author is None or self.author.lower() not in record.author.lower():
                return False
        if self.tags and not set(self.tags) & set(record.tags):
            return False
        return True


@dataclass(frozen=True)
class StoredChunk:
    """A chunk record with its embedding, owned by exactly one document."""

    doc_id: str
    chunk_index: int
    start_offset: int
    end_offset: int
    content: str
    embedding: NDArray[np.float32] = field(repr=False, compare=False)
    section_header: str = ""
    token_count: int = 0
    generation: int = 1

    @property
    def chunk_id(self) -> str:
        """Identifier derived from doc_id and ordinal index."""
        return f"{self.doc_id}:{self.chunk_index}"


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert: document identity and chunks stored."""

    doc_id: str
    chunks_stored: int
    generation: int


@dataclass(frozen=True)
class StoreStats:
    """Aggregate counts over the current snapshot."""

    documents: int
    chunks: int
    dimension: Optional[int]
    characters: int
    version: int


@dataclass(frozen=True)
class _Snapshot:
    """Immutable view of the store contents at one version."""

    version: int
    documents: Mapping[str, DocumentRecord]
    chunks: Mapping[str, tuple[StoredChunk, ...]]
    dimension: Optional[int]
    # doc_id -> file stem in the store's own directory
    files: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def empty(cls, dimension: Optional[int] = None) -> "_Snapshot":
        return cls(
            version=0,
            documents=MappingProxyType({}),
            chunks=MappingProxyType({}),
            dimension=dimension,
        )

    @cached_property
    def candidates(self) -> tuple[StoredChunk, ...]:
        """All chunks, ordered by doc_id then chunk_index."""
        return tuple(
            chunk
            for doc_id in sorted(self.chunks)
            for chunk in self.chunks[doc_id]
        )

    @cached_property
    def matrix(self) -> NDArray[np.float32]:
        """Embeddings stacked in candidates order."""
        if not self.candidates:
            return np.empty((0, self.dimension or 0), dtype=np.float32)
        return np.vstack([c.embedding for c in self.candidates]).astype(np.float32)


class ChunkStore:
    """
    Retrieval store for documents and chunk embeddings.

    Example:
        >>> store = ChunkStore(path="data/store")
        >>> store.upsert_document("doc-1", "Title", None, text, chunks_with_embeddings)
        >>> store.search(query_embedding, top_k=5)
    """

    def __init__(
        self,
        path: str | Path | None = None,
        dimension: int | None = None,
        lock_timeout: float = 30.0,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: Directory for persisted snapshots (in-memory when None)
            dimension: Fix the collection dimension up front (otherwise set
                by the first stored embedding)
            lock_timeout: Seconds to wait for a directory lock held by
                another process
        """
        self.path = Path(path) if path is not None else None
        self.lock_timeout = lock_timeout
        self._fixed_dimension = dimension
        self._write_lock = threading.RLock()
        self._snapshot = _Snapshot.empty(dimension)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def dimension(self) -> Optional[int]:
        """Embedding dimension of the collection, None while unset."""
        return self._snapshot.dimension

    @property
    def size(self) -> int:
        """Number of stored chunks."""
        return len(self._snapshot.candidates)

    @property
    def version(self) -> int:
        """Monotonic snapshot version, incremented by every commit."""
        return self._snapshot.version

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def upsert_document(
        self,
        doc_id: str,
        title: Optional[str],
        url: Optional[str],
        raw_text: str,
        chunks_with_embeddings: Iterable[ChunkWithEmbedding] = (),
        *,
        author: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> UpsertResult:
        """
        Create or replace a document together with its full chunk set.

        The new chunk generation becomes visible in a single swap that also
        removes every chunk of the previous generation.

        Args:
            doc_id: Document identifier
            title: Display name
            url: Source locator
            raw_text: Full document text the chunks were cut from
            chunks_with_embeddings: (Chunk, embedding) pairs for the new generation
            author: Document author, used for filtering
            tags: Document tags, used for filtering

        Returns:
            UpsertResult with the number of chunks stored and the new generation

        Raises:
            DimensionMismatch: If an embedding does not match the collection
            StorageError: If chunk offsets are invalid or persistence fails
        """
        pairs = list(chunks_with_embeddings)
        with self._locked() as current:
            previous = current.documents.get(doc_id)
            generation = previous.generation + 1 if previous else 1

            other_dimension = self._dimension_excluding(current, doc_id)
            new_chunks, dimension = self._build_chunks(
                doc_id, raw_text, pairs, generation, other_dimension, existing=()
            )

            now = datetime.now(timezone.utc)
            record = DocumentRecord(
                doc_id=doc_id,
                title=title,
                url=url,
                raw_text=raw_text,
                author=author,
                tags=_clean_tags(tags),
                chunk_count=len(new_chunks),
                generation=generation,
                created_at=previous.created_at if previous else now,
                updated_at=now,
            )

            documents = dict(current.documents)
            documents[doc_id] = record
            chunks = dict(current.chunks)
            if new_chunks:
                chunks[doc_id] = tuple(new_chunks)
            else:
                chunks.pop(doc_id, None)

            self._commit(current, documents, chunks, dimension, changed={doc_id})

        logger.info(
            f"Upserted document {doc_id} (generation {generation}, "
            f"{len(new_chunks)} chunks, replaced {previous.chunk_count if previous else 0})"
        )
        return UpsertResult(doc_id=doc_id, chunks_stored=len(new_chunks), generation=generation)

    def store_chunks(
        self,
        doc_id: str,
        chunks_with_embeddings: Iterable[ChunkWithEmbedding],
    ) -> int:
        """
        Append chunk records to an existing document's current generation.

        Args:
            doc_id: Owning document
            chunks_with_embeddings: (Chunk, embedding) pairs to append

        Returns:
            Number of chunks appended

        Raises:
            DocumentNotFound: If the document does not exist
            DimensionMismatch: If an embedding does not match the collection
            StorageError: If a chunk_index is already stored or offsets are invalid
        """
        pairs = list(chunks_with_embeddings)
        with self._locked() as current:
            record = current.documents.get(doc_id)
            if record is None:
                raise DocumentNotFound(doc_id)
            if not pairs:
                return 0

            existing = current.chunks.get(doc_id, ())
            appended, dimension = self._build_chunks(
                doc_id,
                record.raw_text,
                pairs,
                record.generation,
                current.dimension,
                existing=existing,
            )
            merged = tuple(sorted((*existing, *appended), key=lambda c: c.chunk_index))

            documents = dict(current.documents)
            documents[doc_id] = replace(
                record,
                chunk_count=len(merged),
                updated_at=datetime.now(timezone.utc),
            )
            chunks = dict(current.chunks)
            chunks[doc_id] = merged

            self._commit(current, documents, chunks, dimension, changed={doc_id})

        logger.info(f"Stored {len(appended)} additional chunks for document {doc_id}")
        return len(appended)

    def delete_document(self, doc_id: str) -> bool:
        """
        Remove a document and all of its chunks.

        Returns:
            True if the document existed
        """
        with self._locked() as current:
            if doc_id not in current.documents:
                return False

            documents = dict(current.documents)
            del documents[doc_id]
            chunks = dict(current.chunks)
            chunks.pop(doc_id, None)

            dimension = current.dimension if chunks or self._fixed_dimension else None
            self._commit(current, documents, chunks, dimension, changed={doc_id})

        logger.info(f"Deleted document {doc_id}")
        return True

    def clear(self) -> None:
        """Remove every document and chunk."""
        with self._locked() as current:
            self._commit(current, {}, {}, self._fixed_dimension, changed=set(current.documents))
        logger.info("Cleared chunk store")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_document(self, doc_id: str) -> Optional[DocumentRecord]:
        """Return a document's metadata, or None if unknown."""
        return self._snapshot.documents.get(doc_id)

    def list_documents(
        self,
        limit: int | None = None,
        offset: int = 0,
        where: DocumentFilter | None = None,
    ) -> list[DocumentRecord]:
        """
        List documents, most recently created first.

        Args:
            limit: Maximum number of documents to return
            offset: Number of documents to skip
            where: Only list documents matching this filter
        """
        records = list(self._snapshot.documents.values())
        if where is not None and not where.is_empty:
            records = [r for r in records if where.matches(r)]
        documents = sorted(records, key=lambda d: (-d.created_at.timestamp(), d.doc_id))
        end = None if limit is None else offset + limit
        return documents[offset:end]

    def get_chunks_by_doc(self, doc_id: str) -> list[StoredChunk]:
        """
        Return all chunks of a document ordered by chunk_index.

        Raises:
            DocumentNotFound: If the document has no stored chunks
        """
        chunks = self._snapshot.chunks.get(doc_id)
        if not chunks:
            raise DocumentNotFound(doc_id)
        return list(chunks)

    def candidates(self) -> tuple[tuple[StoredChunk, ...], NDArray[np.float32]]:
        """Return every stored chunk and its stacked embeddings from one snapshot."""
        snapshot = self._snapshot
        return snapshot.candidates, snapshot.matrix

    def search(
        self,
        query_embedding: ArrayLike,
        top_k: int,
        min_score: float | None = None,
        where: DocumentFilter | None = None,
    ) -> list[RankedChunk]:
        """
        Rank stored chunks against a query vector.

        Args:
            query_embedding: Query vector
            top_k: Maximum number of results (>= 1)
            min_score: Drop results scoring below this value
            where: Only rank chunks of documents matching this filter

        Returns:
            Ranked results with document title and url attached

        Raises:
            DimensionMismatch: If the query dimension differs from the collection
        """
        snapshot = self._snapshot
        if not snapshot.candidates:
            return rank(query_embedding, (), top_k)

        query = np.asarray(query_embedding, dtype=np.float32).ravel()
        if snapshot.dimension is not None and query.shape[0] != snapshot.dimension:
            raise DimensionMismatch(expected=snapshot.dimension, actual=query.shape[0])

        candidates, matrix = snapshot.candidates, snapshot.matrix
        if where is not None and not where.is_empty:
            allowed = {d for d, record in snapshot.documents.items() if where.matches(record)}
            mask = np.fromiter(
                (c.doc_id in allowed for c in candidates), dtype=bool, count=len(candidates)
            )
            candidates = tuple(c for c, keep in zip(candidates, mask) if keep)
            matrix = matrix[mask]

        results = rank(query, candidates, top_k, min_score=min_score, matrix=matrix)
        return [
            replace(
                result,
                title=snapshot.documents[result.doc_id].title,
                url=snapshot.documents[result.doc_id].url,
            )
            for result in results
        ]

    def stats(self) -> StoreStats:
        """Return counts over the current snapshot."""
        snapshot = self._snapshot
        return StoreStats(
            documents=len(snapshot.documents),
            chunks=len(snapshot.candidates),
            dimension=snapshot.dimension,
            characters=sum(len(d.raw_text) for d in snapshot.documents.values()),
            version=snapshot.version,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self, path: str | Path | None = None) -> None:
        """
        Persist the current snapshot.

        Saving to the store's own directory only writes documents missing
        there; any other directory receives a full copy.

        Args:
            path: Target directory (default: the store's own path)

        Raises:
            StorageError: If no directory is configured or writing fails
        """
        target = Path(path) if path is not None else self.path
        if target is None:
            raise StorageError("No store directory configured")

        if target == self.path:
            with self._locked() as current:
                files = self._write_snapshot(target, current, reuse=current.files)
                self._snapshot = replace(current, files=MappingProxyType(files))
            return

        snapshot = self._snapshot
        with self._directory_lock(target):
            self._write_snapshot(target, snapshot, reuse={})

    def load(self, path: str | Path | None = None) -> None:
        """
        Load the snapshot named by the manifest in a directory.

        A directory without a manifest loads as an empty store.

        Raises:
            StorageError: If the manifest or document files are unreadable
        """
        source = Path(path) if path is not None else self.path
        if source is None:
            raise StorageError("No store directory configured")

        with self._write_lock, self._directory_lock(source):
            snapshot = self._read_snapshot(source)
            if source != self.path:
                snapshot = replace(snapshot, files=MappingProxyType({}))
            self._snapshot = snapshot
        logger.info(
            f"Loaded chunk store from {source} (version {snapshot.version}, "
            f"{len(snapshot.documents)} documents, {len(snapshot.candidates)} chunks)"
        )

    def refresh(self) -> bool:
        """
        Pick up commits written to the store directory by other processes.

        Returns:
            True if a newer version was loaded
        """
        if self.path is None or self._disk_version(self.path) <= self.version:
            return False
        with self._locked():
            pass
        return True

    @classmethod
    def from_disk(cls, path: str | Path, dimension: int | None = None) -> "ChunkStore":
        """
        Create a store bound to a directory and load its contents.

        Args:
            path: Store directory
            dimension: Expected collection dimension

        Returns:
            ChunkStore with loaded data

        Raises:
            DimensionMismatch: If persisted vectors disagree with dimension
        """
        store = cls(path=path, dimension=dimension)
        store.load()
        persisted = store._snapshot.dimension
        if dimension is not None and persisted is not None and persisted != dimension:
            raise DimensionMismatch(expected=dimension, actual=persisted)
        return store

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self) -> Iterator[_Snapshot]:
        """
        Hold the writer locks and yield the latest snapshot.

        For a persisted store the snapshot includes commits other processes
        made since our last read, so the caller's change lands on top of them.
        """
        with self._write_lock:
            if self.path is None:
                yield self._snapshot
                return
            with self._directory_lock(self.path):
                self._sync_from_disk()
                yield self._snapshot

    @contextmanager
    def _directory_lock(self, directory: Path) -> Iterator[None]:
        try:
            directory.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(directory / LOCK_NAME))
            lock.acquire(timeout=self.lock_timeout)
        except Timeout as e:
            raise StorageError(f"Store directory {directory} is locked by another process") from e
        except OSError as e:
            raise StorageError(f"Cannot lock store directory {directory}: {e}") from e
        try:
            yield
        finally:
            lock.release()

    def _sync_from_disk(self) -> None:
        disk_version = self._disk_version(self.path)
        if disk_version <= self._snapshot.version:
            return
        self._snapshot = self._read_snapshot(self.path, base=self._snapshot)
        logger.info(f"Picked up store version {disk_version} from {self.path}")

    def _disk_version(self, directory: Path) -> int:
        manifest_file = directory / MANIFEST_NAME
        if not manifest_file.exists():
            return 0
        try:
            with manifest_file.open(encoding="utf-8") as f:
                return int(json.load(f)["version"])
        except (OSError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Unreadable store manifest {manifest_file}: {e}") from e

    def _dimension_excluding(self, snapshot: _Snapshot, doc_id: str) -> Optional[int]:
        """Dimension enforced by chunks outside doc_id (or the fixed dimension)."""
        if self._fixed_dimension is not None:
            return self._fixed_dimension
        if any(other != doc_id for other in snapshot.chunks):
            return snapshot.dimension
        return None

    def _build_chunks(
        self,
        doc_id: str,
        raw_text: str,
        pairs: Sequence[ChunkWithEmbedding],
        generation: int,
        expected_dimension: Optional[int],
        existing: Sequence[StoredChunk],
    ) -> tuple[list[StoredChunk], Optional[int]]:
        """Validate (Chunk, embedding) pairs and convert them to StoredChunks."""
        dimension = expected_dimension
        seen = {c.chunk_index for c in existing}
        stored: list[StoredChunk] = []

        for chunk, embedding in pairs:
            vector = np.asarray(embedding, dtype=np.float32)
            if vector.ndim != 1 or vector.shape[0] == 0:
                raise StorageError(
                    f"Chunk {doc_id}:{chunk.chunk_index} embedding must be a non-empty "
                    f"1-D vector, got shape {vector.shape}"
                )
            if not np.all(np.isfinite(vector)):
                raise StorageError(f"Chunk {doc_id}:{chunk.chunk_index} embedding has non-finite values")
            if dimension is None:
                dimension = int(vector.shape[0])
            elif vector.shape[0] != dimension:
                raise DimensionMismatch(expected=dimension, actual=int(vector.shape[0]))

            if chunk.chunk_index in seen:
                raise StorageError(f"Duplicate chunk_index {chunk.chunk_index} for document {doc_id}")
            seen.add(chunk.chunk_index)

            if not 0 <= chunk.start_offset < chunk.end_offset <= len(raw_text):
                raise StorageError(
                    f"Chunk {doc_id}:{chunk.chunk_index} offsets "
                    f"[{chunk.start_offset}, {chunk.end_offset}) exceed document bounds"
                )
            if raw_text[chunk.start_offset : chunk.end_offset] != chunk.content:
                raise StorageError(
                    f"Chunk {doc_id}:{chunk.chunk_index} content does not match its offsets"
                )

            vector = vector.copy()
            vector.flags.writeable = False
            stored.append(
                StoredChunk(
                    doc_id=doc_id,
                    chunk_index=chunk.chunk_index,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    content=chunk.content,
                    embedding=vector,
                    section_header=chunk.section_header,
                    token_count=chunk.token_count,
                    generation=generation,
                )
            )

        stored.sort(key=lambda c: c.chunk_index)
        for earlier, later in zip(stored, stored[1:]):
            if later.start_offset < earlier.start_offset:
                raise StorageError(
                    f"Chunks of document {doc_id} are not ordered by start_offset"
                )
        return stored, dimension

    def _commit(
        self,
        current: _Snapshot,
        documents: dict[str, DocumentRecord],
        chunks: dict[str, tuple[StoredChunk, ...]],
        dimension: Optional[int],
        changed: set[str],
    ) -> None:
        """Persist (if configured) and then publish a new snapshot."""
        if not chunks and self._fixed_dimension is None:
            dimension = None
        snapshot = _Snapshot(
            version=current.version + 1,
            documents=MappingProxyType(documents),
            chunks=MappingProxyType(chunks),
            dimension=dimension,
        )
        if self.path is not None:
            reuse = {
                doc_id: stem
                for doc_id, stem in current.files.items()
                if doc_id in documents and doc_id not in changed
            }
            files = self._write_snapshot(self.path, snapshot, reuse=reuse)
            snapshot = replace(snapshot, files=MappingProxyType(files))
        self._snapshot = snapshot

    def _write_snapshot(
        self,
        directory: Path,
        snapshot: _Snapshot,
        reuse: Mapping[str, str],
    ) -> dict[str, str]:
        """
        Write missing document files, flip the manifest, then drop stale files.

        Args:
            directory: Store directory (the caller holds its lock)
            snapshot: Snapshot to publish
            reuse: Documents whose files in directory are already current

        Returns:
            Map of doc_id to the file stem the manifest now names
        """
        files: dict[str, str] = {}
        try:
            directory.mkdir(parents=True, exist_ok=True)
            for doc_id, record in snapshot.documents.items():
                stem = reuse.get(doc_id)
                if stem is None:
                    stem = _document_stem(doc_id, snapshot.version)
                    _write_document(
                        directory, stem, record, snapshot.chunks.get(doc_id, ()), snapshot.dimension
                    )
                files[doc_id] = stem

            manifest = {
                "version": snapshot.version,
                "dimension": snapshot.dimension,
                "documents": dict(sorted(files.items())),
            }
            manifest_tmp = directory / f"{MANIFEST_NAME}.tmp"
            with manifest_tmp.open("w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2, ensure_ascii=False)
            os.replace(manifest_tmp, directory / MANIFEST_NAME)
        except (OSError, RuntimeError) as e:
            raise StorageError(f"Failed to persist store snapshot to {directory}: {e}") from e

        live = set(files.values())
        for stale in directory.glob(f"{DOCUMENT_FILE_PREFIX}*"):
            if stale.stem in live:
                continue
            try:
                stale.unlink()
            except OSError as e:
                logger.warning(f"Could not remove stale document file {stale}: {e}")
        return files

    def _read_snapshot(self, directory: Path, base: Optional[_Snapshot] = None) -> _Snapshot:
        """
        Read the snapshot named by the manifest.

        Documents whose file stem is unchanged from base are taken from base
        rather than read again.
        """
        manifest_file = directory / MANIFEST_NAME
        if not manifest_file.exists():
            return _Snapshot.empty(self._fixed_dimension)

        documents: dict[str, DocumentRecord] = {}
        chunks: dict[str, tuple[StoredChunk, ...]] = {}
        try:
            with manifest_file.open(encoding="utf-8") as f:
                manifest = json.load(f)
            version = int(manifest["version"])
            dimension = manifest.get("dimension")
            files = {str(doc_id): str(stem) for doc_id, stem in manifest["documents"].items()}

            for doc_id, stem in files.items():
                if base is not None and base.files.get(doc_id) == stem:
                    documents[doc_id] = base.documents[doc_id]
                    if doc_id in base.chunks:
                        chunks[doc_id] = base.chunks[doc_id]
                    continue
                record, doc_chunks = _read_document(directory, stem)
                if record.doc_id != doc_id:
                    raise StorageError(f"Document file {stem} holds {record.doc_id}, expected {doc_id}")
                documents[doc_id] = record
                if doc_chunks:
                    chunks[doc_id] = doc_chunks
        except (OSError, RuntimeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to load store snapshot from {directory}: {e}") from e

        return _Snapshot(
            version=version,
            documents=MappingProxyType(documents),
            chunks=MappingProxyType(chunks),
            dimension=dimension if dimension is not None else self._fixed_dimension,
            files=MappingProxyType(files),
        )


def _clean_tags(tags: Iterable[str]) -> tuple[str, ...]:
    """Strip tags and drop blanks and duplicates, keeping first-seen order."""
    return tuple(dict.fromkeys(t.strip() for t in tags if t and t.strip()))


def _document_stem(doc_id: str, version: int) -> str:
    digest = hashlib.sha1(doc_id.encode("utf-8")).hexdigest()[:16]
    return f"{DOCUMENT_FILE_PREFIX}{digest}-{version}"


def _write_document(
    directory: Path,
    stem: str,
    record: DocumentRecord,
    chunks: Sequence[StoredChunk],
    dimension: Optional[int],
) -> None:
    if chunks:
        index = faiss.IndexFlatIP(dimension)
        vectors = np.vstack([c.embedding for c in chunks])
        index.add(np.ascontiguousarray(vectors, dtype=np.float32))
        faiss.write_index(index, str(directory / f"{stem}.index"))

    data = {
        "document": _document_to_dict(record),
        "chunks": [_chunk_to_dict(chunk) for chunk in chunks],
    }
    with (directory / f"{stem}.json").open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _read_document(directory: Path, stem: str) -> tuple[DocumentRecord, tuple[StoredChunk, ...]]:
    with (directory / f"{stem}.json").open(encoding="utf-8") as f:
        data = json.load(f)
    record = _document_from_dict(data["document"])
    chunk_data = data["chunks"]
    if not chunk_data:
        return record, ()

    index = faiss.read_index(str(directory / f"{stem}.index"))
    vectors = index.reconstruct_n(0, index.ntotal)
    if len(vectors) != len(chunk_data):
        raise StorageError(
            f"Document file {stem} has {len(chunk_data)} chunks but {len(vectors)} vectors"
        )

    chunks = []
    for row, item in enumerate(chunk_data):
        vector = np.array(vectors[row], dtype=np.float32)
        vector.flags.writeable = False
        chunks.append(_chunk_from_dict(item, record, vector))
    return record, tuple(sorted(chunks, key=lambda c: c.chunk_index))


def _document_to_dict(record: DocumentRecord) -> dict[str, Any]:
    return {
        "doc_id": record.doc_id,
        "title": record.title,
        "url": record.url,
        "author": record.author,
        "tags": list(record.tags),
        "raw_text": record.raw_text,
        "chunk_count": record.chunk_count,
        "generation": record.generation,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }


def _document_from_dict(data: dict[str, Any]) -> DocumentRecord:
    return DocumentRecord(
        doc_id=data["doc_id"],
        title=data.get("title"),
        url=data.get("url"),
        raw_text=data["raw_text"],
        author=data.get("author"),
        tags=tuple(data.get("tags", ())),
        chunk_count=data.get("chunk_count", 0),
        generation=data.get("generation", 1),
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


def _chunk_to_dict(chunk: StoredChunk) -> dict[str, Any]:
    # Content is re-derived from the document text on load
    return {
        "chunk_index": chunk.chunk_index,
        "start_offset": chunk.start_offset,
        "end_offset": chunk.end_offset,
        "section_header": chunk.section_header,
        "token_count": chunk.token_count,
        "generation": chunk.generation,
    }


def _chunk_from_dict(
    data: dict[str, Any], record: DocumentRecord, embedding: NDArray[np.float32]
) -> StoredChunk:
    return StoredChunk(
        doc_id=record.doc_id,
        chunk_index=data["chunk_index"],
        start_offset=data["start_offset"],
        end_offset=data["end_offset"],
        content=record.raw_text[data["start_offset"] : data["end_offset"]],
        embedding=embedding,
        section_header=data.get("section_header", ""),
        token_count=data.get("token_count", 0),
        generation=data.get("generation", 1),
    )
