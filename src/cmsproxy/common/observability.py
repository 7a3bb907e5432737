"""Structured logging and tracing setup for the proxy."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars


_logging_configured = False
_tracer_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Route structlog through stdlib logging and render JSON lines."""

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install a tracer provider once per process.

    Spans go to an OTLP/HTTP collector when ``endpoint`` is set and to an
    in-memory exporter otherwise, so local runs never block on export.
    """

    global _tracer_configured
    if _tracer_configured:
        return
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    resource = Resource.create({"service.name": service_name})
    ratio = max(0.0, min(1.0, sampler_ratio))
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(ratio))
    if endpoint:
        processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    else:
        processor = SimpleSpanProcessor(InMemorySpanExporter())
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    _tracer_configured = True


def instrument_fastapi_app(app) -> None:
    """Attach OpenTelemetry server spans to a FastAPI app."""

    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())


def instrument_http_client(client: httpx.AsyncClient) -> None:
    """Emit client spans for every upstream call made through ``client``."""

    HTTPXClientInstrumentor.instrument_client(client, tracer_provider=trace.get_tracer_provider())
