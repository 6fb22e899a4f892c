"""
Unit tests for Phoenix tracing integration.

Tests cover:
    - setup_tracing() initialization
    - @traced decorator on sync and async functions
    - add_span_attributes() helper
    - record_exception() helper
"""

from unittest.mock import MagicMock, patch

import pytest

from contentrag.config import settings
from contentrag.tracing import phoenix
from contentrag.tracing.phoenix import (
    add_span_attributes,
    record_exception,
    setup_tracing,
    traced,
)


@pytest.fixture
def tracing_enabled(monkeypatch):
    monkeypatch.setattr(settings, "enable_tracing", True)
    monkeypatch.setattr(phoenix, "_tracing_configured", False)


@pytest.fixture
def mock_trace():
    with patch("contentrag.tracing.phoenix.trace") as trace:
        yield trace


@pytest.mark.unit
class TestSetupTracing:
    def test_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "enable_tracing", False)

        assert setup_tracing() is False

    def test_registers_once(self, tracing_enabled):
        with patch("phoenix.otel.register") as register:
            assert setup_tracing() is True
            assert setup_tracing() is True

        register.assert_called_once_with(
            project_name="contentrag",
            endpoint=f"{settings.phoenix_endpoint}/v1/traces",
            set_global_tracer_provider=True,
        )


@pytest.mark.unit
class TestTracedDecorator:
    def test_passthrough_when_disabled(self, monkeypatch, mock_trace):
        monkeypatch.setattr(settings, "enable_tracing", False)

        @traced("test.add")
        def add(a, b):
            return a + b

        assert add(2, 3) == 5
        mock_trace.get_tracer.assert_not_called()

    def test_preserves_metadata(self):
        @traced()
        def documented():
            """Docstring."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring."

    def test_sync_span(self, tracing_enabled, mock_trace):
        @traced("test.sync")
        def work():
            return "done"

        assert work() == "done"
        tracer = mock_trace.get_tracer.return_value
        tracer.start_as_current_span.assert_called_once_with("test.sync")

    @pytest.mark.asyncio
    async def test_async_span(self, tracing_enabled, mock_trace):
        @traced("test.async")
        async def work():
            return 42

        assert await work() == 42
        tracer = mock_trace.get_tracer.return_value
        tracer.start_as_current_span.assert_called_once_with("test.async")

    @pytest.mark.asyncio
    async def test_async_exception_propagates(self, tracing_enabled, mock_trace):
        @traced("test.fail")
        async def fail():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await fail()


@pytest.mark.unit
class TestSpanHelpers:
    def test_add_span_attributes(self, tracing_enabled, mock_trace):
        span = MagicMock()
        mock_trace.get_current_span.return_value = span

        add_span_attributes(doc_id="d1", chunks=3, extra=["a"])

        span.set_attribute.assert_any_call("doc_id", "d1")
        span.set_attribute.assert_any_call("chunks", 3)
        span.set_attribute.assert_any_call("extra", "['a']")

    def test_add_span_attributes_disabled(self, monkeypatch, mock_trace):
        monkeypatch.setattr(settings, "enable_tracing", False)

        add_span_attributes(doc_id="d1")

        mock_trace.get_current_span.assert_not_called()

    def test_record_exception(self, tracing_enabled, mock_trace):
        span = MagicMock()
        mock_trace.get_current_span.return_value = span
        error = RuntimeError("failed")

        record_exception(error)

        span.record_exception.assert_called_once_with(error)
        span.set_status.assert_called_once()
