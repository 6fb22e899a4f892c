"""
Pydantic models for API request and response schemas.

These models provide automatic validation and OpenAPI documentation.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class IngestRequest(BaseModel):
    """Request schema for the /ingest endpoint."""

    doc_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=200,
        pattern=r"^[A-Za-z0-9._:-]+$",
        description="Stable document identifier (generated when omitted)",
        examples=["brand-guide-2024"],
    )
    title: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Display name",
    )
    url: Optional[str] = Field(
        default=None,
        max_length=2000,
        description="Source locator",
    )
    author: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Document author, usable as a search filter",
    )
    tags: list[str] = Field(
        default_factory=list,
        max_length=50,
        description="Free-form labels, usable as a search filter",
        examples=[["linkedin", "b2b"]],
    )
    raw: str = Field(
        ...,
        description="Full document text (may be empty)",
    )

    @field_validator("doc_id", "title", "url", "author", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        """Treat empty strings as missing."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


class IngestResponse(BaseModel):
    """Response schema for the /ingest endpoint."""

    doc_id: str = Field(description="Identifier of the stored document")
    chunks_stored: int = Field(ge=0, description="Number of chunks stored")
    generation: int = Field(ge=1, description="Version of the document's chunk set")


class SearchResult(BaseModel):
    """One ranked chunk returned by /search."""

    doc_id: str
    chunk_index: int = Field(ge=0)
    content: str
    score: float = Field(ge=-1.0, le=1.0, description="Cosine similarity")
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    title: Optional[str] = None
    url: Optional[str] = None


class DocumentSummary(BaseModel):
    """Document metadata without its text."""

    doc_id: str
    title: Optional[str] = None
    url: Optional[str] = None
    author: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    chunk_count: int
    generation: int
    characters: int
    created_at: datetime
    updated_at: datetime


class DocumentDetail(DocumentSummary):
    """Document metadata including the raw text."""

    raw: str


class DocumentList(BaseModel):
    """Paginated document listing."""

    documents: list[DocumentSummary]
    total: int
    limit: int
    offset: int


class ChunkSchema(BaseModel):
    """A stored chunk without its embedding."""

    chunk_id: str
    doc_id: str
    chunk_index: int
    start_offset: int
    end_offset: int
    content: str
    section_header: str = ""
    token_count: int = 0


class StatsResponse(BaseModel):
    """Response schema for the /stats endpoint."""

    documents: int
    chunks: int
    dimension: Optional[int] = None
    characters: int
    version: int


class HealthResponse(BaseModel):
    """Response schema for the /health endpoint."""

    status: str = Field(
        description="Health status",
        examples=["healthy", "degraded"],
    )
    version: str = Field(description="API version")
    store_loaded: bool = Field(description="Whether the chunk store is loaded")
    chunks: int = Field(default=0, description="Number of stored chunks")


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    error: str = Field(
        description="Error code",
        examples=["invalid_config", "embedding_provider_unavailable", "dimension_mismatch"],
    )
    message: str = Field(description="Human-readable error message")
    retryable: bool = Field(
        default=False,
        description="Whether retrying the same request later may succeed",
    )
