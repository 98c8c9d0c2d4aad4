#!/usr/bin/env python3
"""
Tracing for the refresh engine using OpenTelemetry.

Spans cover feed fetches, refresh attempts and scheduler ticks. The aiohttp
client, sqlite3 and logging are instrumented, and spans and log records are
exported to Azure Monitor when a connection string is configured.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: pulse-rss)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

Initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import asyncio
import functools
import logging
import threading
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from azure.monitor.opentelemetry.exporter import (
    AzureMonitorTraceExporter,
    AzureMonitorLogExporter,
)

DEFAULT_SERVICE_NAME = "pulse-rss"

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )


def _attach_log_exporter(resource: Resource, conn: str) -> None:
    """Forward stdlib log records to Azure Monitor."""
    from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
    from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    from opentelemetry._logs import set_logger_provider

    lp = LoggerProvider(resource=resource)
    lp.add_log_record_processor(BatchLogRecordProcessor(AzureMonitorLogExporter.from_connection_string(conn)))
    set_logger_provider(lp)

    handler = LoggingHandler(level=logging.NOTSET, logger_provider=lp)
    root_logger = logging.getLogger()
    if not any(isinstance(h, LoggingHandler) for h in root_logger.handlers):
        root_logger.addHandler(handler)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)
            trace.set_tracer_provider(provider)
        _provider = provider

        conn = _connection_string()
        if conn:
            try:
                provider.add_span_processor(
                    BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn))
                )
                _attach_log_exporter(resource, conn)
                _logger.info("Telemetry initialized with Azure Monitor exporter (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry: invalid Azure Monitor connection string, spans stay local: %s", e)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s)", svc)

        AioHttpClientInstrumentor().instrument()
        # Adds otelTraceID / otelSpanID to log records without changing the format
        LoggingInstrumentor().instrument(set_logging_format=False)
        SQLite3Instrumentor().instrument()

        atexit.register(provider.shutdown)
        _initialized = True


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def annotate_span(**attrs: Any) -> None:
    """Set attributes on the current span, e.g. a refresh outcome.

    None values are skipped. A no-op when no span is recording.
    """
    span = trace.get_current_span()
    if not span.is_recording():
        return
    for key, value in attrs.items():
        if value is not None:
            span.set_attribute(key.replace("_", ".", 1), value)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: Dict[str, Any] | None = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Decorator running a sync or async function inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes (feed id, URL, operation name). Exceptions mark the span as
    failed and propagate unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        def _attributes(args, kwargs) -> Dict[str, Any]:
            attrs = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, AttributeError, KeyError, IndexError, ValueError):
                    pass
            return {k: v for k, v in attrs.items() if v is not None}

        def _fail(span, exc: Exception) -> None:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name, attributes=_attributes(args, kwargs)) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _fail(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _sync_wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name, attributes=_attributes(args, kwargs)) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _fail(span, e)
                    raise

        return _sync_wrapper

    return _decorator
