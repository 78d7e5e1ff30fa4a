"""Structured logging and tracing for fhvm.

Every lifecycle operation runs inside :func:`vm_operation`, which opens a span
and binds ``vm_id``/``operation`` into the structlog context so that log lines
emitted by the network, jail and VMM layers carry them without plumbing.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Dict, Iterator, Optional
from urllib.parse import unquote

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, bound_contextvars

TRACER_NAME = "fhvm"

_logging_configured = False
_tracer_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if level:
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def _renderer(log_format: str):
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    return structlog.processors.JSONRenderer()


def configure_logging(service_name: str, level: str | int | None = None, log_format: str = "json") -> None:
    """Route structlog through stdlib logging with JSON (or console) output."""

    global _logging_configured
    numeric_level = _log_level(level)
    if _logging_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s", stream=sys.stderr)
        _logging_configured = True

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "console":
        processors.append(_renderer(log_format))
    else:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            _renderer(log_format),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``OTEL_EXPORTER_OTLP_HEADERS`` style ``k=v,k2=v2`` strings."""

    parsed: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, sep, value = item.partition("=")
        key, value = key.strip(), value.strip()
        if sep and key and value:
            parsed[key] = unquote(value)
    return parsed


def _span_processor(endpoint: Optional[str], headers: Optional[str]) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the global tracer provider once per process.

    Spans are exported over OTLP/HTTP when ``endpoint`` is set and kept in
    memory otherwise. A provider installed by the embedding application wins.
    """

    global _tracer_configured
    if _tracer_configured:
        return
    _tracer_configured = True
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return

    ratio = min(1.0, max(0.0, sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    provider.add_span_processor(_span_processor(endpoint, headers))
    trace.set_tracer_provider(provider)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def vm_operation(operation: str, vm_id: str) -> Iterator[trace.Span]:
    """Span ``fhvm.vm.<operation>`` with the VM id bound into log context."""

    with get_tracer().start_as_current_span(f"fhvm.vm.{operation}") as span:
        span.set_attribute("vm.id", vm_id)
        span.set_attribute("vm.operation", operation)
        with bound_contextvars(vm_id=vm_id, operation=operation):
            yield span
