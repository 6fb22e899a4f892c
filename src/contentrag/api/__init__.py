"""
FastAPI REST API for contentrag.

Endpoints:
    POST /ingest - Chunk, embed and store a document
    GET /search - Retrieve the most similar chunks for a query
    GET /documents - Document management (list, detail, chunks, delete, reprocess)
    GET /health - Health check for k8s probes
"""

from contentrag.api.main import app, create_app

__all__ = ["app", "create_app"]
