"""OpenTelemetry wiring for LeakGuard.

``configure_tracing()`` is called once by the process entry point. When an
OTLP endpoint is configured (``OTEL_EXPORTER_OTLP_ENDPOINT`` or
``OTEL_EXPORTER_OTLP_TRACES_ENDPOINT``) it installs an SDK TracerProvider that
batches spans to the OTLP/HTTP exporter; the exporter reads its endpoint and
headers from the same environment. Otherwise the API's default no-op provider
stays in place and spans cost next to nothing.

The request controller receives its tracer through its constructor
(``get_tracer()``), so tests can inject an in-memory provider.
"""

from __future__ import annotations

import os
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from leakguard.utils.logger import get_logger

logger = get_logger(__name__)

TRACER_NAME = "leakguard.proxy"
DEFAULT_SERVICE_NAME = "leakguard"

# Spans are flushed at least this often (milliseconds)
_EXPORT_DELAY_MS = 1000


def _endpoint_configured() -> bool:
    return bool(
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    )


def configure_tracing(service_name: Optional[str] = None) -> Callable[[], None]:
    """Install the OTLP tracer provider if an endpoint is configured.

    Returns:
        A shutdown callable that flushes and stops the exporter. A no-op when
        tracing was not enabled.
    """
    if not _endpoint_configured():
        logger.debug("tracing_disabled", reason="no OTLP endpoint configured")
        return lambda: None

    name = service_name or os.getenv("OTEL_SERVICE_NAME") or DEFAULT_SERVICE_NAME
    provider = TracerProvider(resource=Resource.create({"service.name": name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(), schedule_delay_millis=_EXPORT_DELAY_MS)
    )
    trace.set_tracer_provider(provider)
    logger.info("tracing_enabled", service_name=name)

    def shutdown() -> None:
        provider.shutdown()

    return shutdown


def get_tracer(provider: Optional[trace.TracerProvider] = None) -> trace.Tracer:
    """Return the proxy tracer from ``provider`` (default: the global provider)."""
    return trace.get_tracer(TRACER_NAME, tracer_provider=provider)
