"""
FastAPI application for the contentrag REST API.

Run with:
    uvicorn contentrag.api.main:app --reload

Or use the CLI:
    contentrag serve
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contentrag import __version__
from contentrag.api.models import (
    ChunkSchema,
    DocumentDetail,
    DocumentList,
    DocumentSummary,
    ErrorResponse,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    SearchResult,
    StatsResponse,
)
from contentrag.config import settings
from contentrag.errors import (
    ContentRAGError,
    DimensionMismatch,
    DocumentNotFound,
    EmbeddingProviderError,
    InvalidConfig,
    OperationTimeout,
    PermanentEmbeddingError,
    StorageError,
    TransientEmbeddingError,
)
from contentrag.log import configure_logging
from contentrag.retrieval.pipeline import RAGService
from contentrag.retrieval.resources import get_rag_service, initialize_resources
from contentrag.retrieval.store import DocumentRecord
from contentrag.tracing import record_exception, setup_tracing

logger = logging.getLogger(__name__)

# Most specific classes first
ERROR_STATUS: list[tuple[type[ContentRAGError], int]] = [
    (InvalidConfig, status.HTTP_400_BAD_REQUEST),
    (TransientEmbeddingError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PermanentEmbeddingError, status.HTTP_502_BAD_GATEWAY),
    (EmbeddingProviderError, status.HTTP_502_BAD_GATEWAY),
    (DimensionMismatch, status.HTTP_409_CONFLICT),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (DocumentNotFound, status.HTTP_404_NOT_FOUND),
    (OperationTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        - Configure logging and tracing
        - Load the chunk store and create the embedder (cached)
    """
    configure_logging(settings.log_level)
    logger.info("Initializing contentrag resources...")

    try:
        resource_status = initialize_resources()
        logger.info(f"Resource initialization status: {resource_status}")
    except Exception as e:
        logger.error(f"Failed to initialize resources: {e}")
        raise RuntimeError(f"Startup failed: {e}") from e

    setup_tracing()

    yield

    logger.info("Shutting down contentrag...")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="contentrag",
        description="Retrieval-augmented generation core for content-marketing briefs",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ContentRAGError, contentrag_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    return app


def status_for(error: ContentRAGError) -> int:
    """HTTP status code for an error class."""
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def contentrag_error_handler(request: Request, exc: ContentRAGError) -> JSONResponse:
    """Map the error taxonomy onto JSON error responses."""
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        record_exception(exc)
    body = ErrorResponse(error=exc.code, message=str(exc), retryable=exc.retryable)
    return JSONResponse(status_code=code, content=body.model_dump())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report request validation failures as invalid_config errors."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    body = ErrorResponse(error=InvalidConfig.code, message=problems, retryable=False)
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump())


def get_service() -> RAGService:
    """Dependency returning the shared RAGService."""
    return get_rag_service()


router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid parameters"},
    422: {"model": ErrorResponse, "description": "Invalid request body"},
    502: {"model": ErrorResponse, "description": "Embedding provider rejected the request"},
    503: {"model": ErrorResponse, "description": "Embedding provider temporarily unavailable"},
    504: {"model": ErrorResponse, "description": "Operation timed out"},
}


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint for liveness/readiness probes.

    Returns:
        Health status and basic metrics
    """
    from contentrag.retrieval.resources import get_chunk_store

    try:
        store = get_chunk_store()
        return HealthResponse(
            status="healthy", version=__version__, store_loaded=True, chunks=store.size
        )
    except ContentRAGError as e:
        logger.warning(f"Health check could not load store: {e}")
        return HealthResponse(status="degraded", version=__version__, store_loaded=False)


@router.post(
    "/ingest",
    response_model=IngestResponse,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Dimension mismatch"}},
    tags=["Knowledge"],
)
async def ingest_endpoint(
    request: IngestRequest,
    service: RAGService = Depends(get_service),
) -> IngestResponse:
    """
    Chunk, embed and store a document, replacing any previous version.

    Args:
        request: Document identity and raw text

    Returns:
        Stored document id and number of chunks
    """
    result = await service.ingest(
        request.doc_id,
        request.title,
        request.url,
        request.raw,
        timeout=settings.ingest_timeout,
        author=request.author,
        tags=request.tags,
    )
    return IngestResponse(
        doc_id=result.doc_id,
        chunks_stored=result.chunks_stored,
        generation=result.generation,
    )


@router.get(
    "/search",
    response_model=list[SearchResult],
    responses=ERROR_RESPONSES,
    tags=["Knowledge"],
)
async def search_endpoint(
    q: str = Query(..., min_length=1, max_length=2000, description="Search query"),
    top_k: Optional[int] = Query(default=None, ge=1, le=100, description="Maximum results"),
    min_score: Optional[float] = Query(default=None, ge=-1.0, le=1.0, description="Minimum similarity"),
    author: Optional[str] = Query(default=None, max_length=200, description="Author contains this text"),
    tags: Optional[list[str]] = Query(default=None, description="Document carries any of these tags"),
    service: RAGService = Depends(get_service),
) -> list[SearchResult]:
    """
    Return the stored chunks most similar to a query.

    top_k defaults to RETRIEVAL_TOP_K and min_score to SIMILARITY_THRESHOLD.
    author and tags restrict the search to matching documents.
    """
    results = await service.retrieve(
        q,
        top_k=top_k or settings.retrieval_top_k,
        min_score=min_score if min_score is not None else settings.similarity_threshold,
        timeout=settings.search_timeout,
        author=author,
        tags=tags,
    )
    return [
        SearchResult(
            doc_id=r.doc_id,
            chunk_index=r.chunk_index,
            content=r.content,
            score=r.score,
            start_offset=r.start_offset,
            end_offset=r.end_offset,
            title=r.title,
            url=r.url,
        )
        for r in results
    ]


@router.get("/documents", response_model=DocumentList, tags=["Documents"])
async def list_documents_endpoint(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    author: Optional[str] = Query(default=None, max_length=200),
    tags: Optional[list[str]] = Query(default=None),
    service: RAGService = Depends(get_service),
) -> DocumentList:
    """List stored documents, most recently created first, optionally filtered."""
    matching = service.list_documents(author=author, tags=tags)
    return DocumentList(
        documents=[_summary(d) for d in matching[offset : offset + limit]],
        total=len(matching),
        limit=limit,
        offset=offset,
    )


@router.get(
    "/documents/{doc_id}",
    response_model=DocumentDetail,
    responses={404: {"model": ErrorResponse}},
    tags=["Documents"],
)
async def get_document_endpoint(
    doc_id: str,
    service: RAGService = Depends(get_service),
) -> DocumentDetail:
    """Return a document's metadata and raw text."""
    record = service.get_document(doc_id)
    return DocumentDetail(**_summary(record).model_dump(), raw=record.raw_text)


@router.get(
    "/documents/{doc_id}/chunks",
    response_model=list[ChunkSchema],
    responses={404: {"model": ErrorResponse}},
    tags=["Documents"],
)
async def get_chunks_endpoint(
    doc_id: str,
    service: RAGService = Depends(get_service),
) -> list[ChunkSchema]:
    """Return a document's chunks ordered by chunk_index."""
    return [
        ChunkSchema(
            chunk_id=c.chunk_id,
            doc_id=c.doc_id,
            chunk_index=c.chunk_index,
            start_offset=c.start_offset,
            end_offset=c.end_offset,
            content=c.content,
            section_header=c.section_header,
            token_count=c.token_count,
        )
        for c in service.get_chunks(doc_id)
    ]


@router.delete(
    "/documents/{doc_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    tags=["Documents"],
)
async def delete_document_endpoint(
    doc_id: str,
    service: RAGService = Depends(get_service),
) -> Response:
    """Delete a document and all of its chunks."""
    if not await service.delete_document(doc_id):
        raise DocumentNotFound(doc_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/documents/{doc_id}/reprocess",
    response_model=IngestResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse}},
    tags=["Documents"],
)
async def reprocess_document_endpoint(
    doc_id: str,
    service: RAGService = Depends(get_service),
) -> IngestResponse:
    """Re-chunk and re-embed a stored document with the current settings."""
    result = await service.reprocess(doc_id, timeout=settings.ingest_timeout)
    return IngestResponse(
        doc_id=result.doc_id,
        chunks_stored=result.chunks_stored,
        generation=result.generation,
    )


@router.get("/stats", response_model=StatsResponse, tags=["System"])
async def stats_endpoint(service: RAGService = Depends(get_service)) -> StatsResponse:
    """Return document and chunk counts."""
    stats = service.stats()
    return StatsResponse(
        documents=stats.documents,
        chunks=stats.chunks,
        dimension=stats.dimension,
        characters=stats.characters,
        version=stats.version,
    )


def _summary(record: DocumentRecord) -> DocumentSummary:
    return DocumentSummary(
        doc_id=record.doc_id,
        title=record.title,
        url=record.url,
        author=record.author,
        tags=list(record.tags),
        chunk_count=record.chunk_count,
        generation=record.generation,
        characters=len(record.raw_text),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# Create app instance
app = create_app()
