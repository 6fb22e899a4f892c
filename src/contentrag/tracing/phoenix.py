"""
Arize Phoenix tracing integration.

Sets up OpenTelemetry tracing for observability of ingest and retrieval.
Traces are sent to a Phoenix instance for visualization.

Usage:
    from contentrag.tracing import setup_tracing
    setup_tracing()  # Call once at application startup
"""

import functools
import inspect
import logging
from typing import Any, Callable, TypeVar

from opentelemetry import trace

from contentrag.config import settings

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)

_tracing_configured = False


def setup_tracing() -> bool:
    """
    Initialize Phoenix tracing with OpenTelemetry.

    Requires a Phoenix server running at settings.phoenix_endpoint.
    Calling it again after a successful setup is a no-op.

    Returns:
        True if a tracer provider is registered
    """
    global _tracing_configured

    if not settings.enable_tracing:
        return False
    if _tracing_configured:
        return True

    from phoenix.otel import register

    register(
        project_name="contentrag",
        endpoint=f"{settings.phoenix_endpoint}/v1/traces",
        set_global_tracer_provider=True,
    )
    _tracing_configured = True
    logger.info(f"Tracing enabled, exporting to {settings.phoenix_endpoint}")
    return True


def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator to add a tracing span to a sync or async function.

    Args:
        name: Span name (defaults to function qualified name)

    Returns:
        Decorated function with tracing

    Example:
        @traced("rag.ingest")
        async def ingest(...):
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                if not settings.enable_tracing:
                    return await func(*args, **kwargs)

                tracer = trace.get_tracer(__name__)
                with tracer.start_as_current_span(span_name) as span:
                    span.set_attribute("function.name", func.__name__)
                    span.set_attribute("function.module", func.__module__)
                    result = await func(*args, **kwargs)
                    span.set_attribute("result.type", type(result).__name__)
                    return result

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not settings.enable_tracing:
                return func(*args, **kwargs)

            tracer = trace.get_tracer(__name__)
            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                result = func(*args, **kwargs)
                span.set_attribute("result.type", type(result).__name__)
                return result

        return wrapper  # type: ignore

    return decorator


def add_span_attributes(**attributes: Any) -> None:
    """
    Add attributes to the current span.

    Args:
        **attributes: Key-value pairs to add as span attributes

    Example:
        add_span_attributes(doc_id="doc-1", chunks=3)
    """
    if not settings.enable_tracing:
        return

    span = trace.get_current_span()
    for key, value in attributes.items():
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


def record_exception(exception: Exception) -> None:
    """
    Record an exception in the current span.

    Args:
        exception: Exception to record
    """
    if not settings.enable_tracing:
        return

    span = trace.get_current_span()
    span.record_exception(exception)
    span.set_status(trace.Status(trace.StatusCode.ERROR))
