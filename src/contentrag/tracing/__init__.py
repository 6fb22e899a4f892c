"""
Observability and tracing with Arize Phoenix.

Provides OpenTelemetry-based tracing for the ingest and retrieval
pipeline.
"""

from contentrag.tracing.phoenix import (
    add_span_attributes,
    record_exception,
    setup_tracing,
    traced,
)

__all__ = ["add_span_attributes", "record_exception", "setup_tracing", "traced"]
