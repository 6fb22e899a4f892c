"""
Cosine-similarity ranking over stored chunk vectors.

A full scan over the candidate pool with a deterministic ordering:
descending score, then ascending chunk_index, then ascending doc_id.
Repeated queries against unchanged data return identical results.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import numpy as np
from numpy.typing import ArrayLike, NDArray

from contentrag.errors import DimensionMismatch, InvalidConfig

if TYPE_CHECKING:
    from contentrag.retrieval.store import StoredChunk


@dataclass(frozen=True)
class RankedChunk:
    """A retrieval result with enough context to cite its source."""

    doc_id: str
    chunk_index: int
    content: str
    score: float
    start_offset: int = 0
    end_offset: int = 0
    title: Optional[str] = None
    url: Optional[str] = None


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """
    Cosine similarity of two vectors, 0.0 if either has zero norm.

    Raises:
        DimensionMismatch: If the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape:
        raise DimensionMismatch(expected=va.shape[0], actual=vb.shape[0])
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def cosine_scores(query: ArrayLike, matrix: ArrayLike) -> NDArray[np.float64]:
    """
    Cosine similarity of a query against every row of a matrix.

    Args:
        query: Vector of shape (dimension,)
        matrix: Array of shape (n, dimension)

    Returns:
        Array of n scores in [-1, 1]; rows or queries with zero norm score 0.0

    Raises:
        DimensionMismatch: If query and matrix dimensions differ
    """
    q = np.asarray(query, dtype=np.float64).ravel()
    m = np.asarray(matrix, dtype=np.float64)
    if m.size == 0:
        return np.zeros(m.shape[0] if m.ndim == 2 else 0, dtype=np.float64)
    if m.ndim != 2 or m.shape[1] != q.shape[0]:
        raise DimensionMismatch(expected=m.shape[-1], actual=q.shape[0])

    denom = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom == 0, 0.0, dots / np.where(denom == 0, 1.0, denom))
    return np.clip(scores, -1.0, 1.0)


def rank(
    query: ArrayLike,
    candidates: Sequence["StoredChunk"],
    top_k: int,
    min_score: Optional[float] = None,
    matrix: Optional[NDArray[np.float32]] = None,
) -> list[RankedChunk]:
    """
    Return the top_k candidates most similar to the query.

    Args:
        query: Query embedding
        candidates: Stored chunks to score (full scan)
        top_k: Maximum number of results, must be >= 1
        min_score: Drop results scoring below this value
        matrix: Pre-stacked candidate embeddings, row i for candidates[i]

    Returns:
        RankedChunk list sorted by (-score, chunk_index, doc_id)

    Raises:
        InvalidConfig: If top_k < 1
        DimensionMismatch: If the query dimension differs from the candidates'
    """
    if top_k < 1:
        raise InvalidConfig(f"top_k must be >= 1, got {top_k}")
    if not candidates:
        return []

    if matrix is None:
        matrix = np.vstack([c.embedding for c in candidates])
    scores = cosine_scores(query, matrix)

    scored = [
        (float(score), candidate)
        for score, candidate in zip(scores, candidates)
        if min_score is None or score >= min_score
    ]
    scored.sort(key=lambda pair: (-pair[0], pair[1].chunk_index, pair[1].doc_id))

    return [
        RankedChunk(
            doc_id=candidate.doc_id,
            chunk_index=candidate.chunk_index,
            content=candidate.content,
            score=score,
            start_offset=candidate.start_offset,
            end_offset=candidate.end_offset,
        )
        for score, candidate in scored[:top_k]
    ]
