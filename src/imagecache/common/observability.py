"""Structured logging, per-request log context and tracing for the proxy."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional
from uuid import uuid4

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from starlette.requests import Request
from structlog.contextvars import bind_contextvars, bound_contextvars, clear_contextvars

from .. import __version__


REQUEST_ID_HEADER = "X-Request-ID"

# origin client and image decoder chatter is only useful when debugging them
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "PIL")

# probes and scrapes would drown the request spans
UNTRACED_ROUTES = "healthz,metrics"

LOG_PROCESSORS = (
    structlog.contextvars.merge_contextvars,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.stdlib.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.dict_tracebacks,
    structlog.processors.EventRenamer("message"),
    structlog.processors.JSONRenderer(),
)


def _level_number(level: Optional[str]) -> int:
    number = logging.getLevelName(level.strip().upper()) if level else logging.INFO
    return number if isinstance(number, int) else logging.INFO


def configure_logging(service_name: str, level: Optional[str] = None) -> int:
    """Render structlog events as JSON lines through stdlib logging.

    Every event carries ``service``; request handlers add more context with
    :func:`request_log_context`. Returns the numeric level in effect.
    """
    number = _level_number(level)
    logging.basicConfig(level=number, format="%(message)s")
    logging.getLogger().setLevel(number)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(number, logging.WARNING))

    structlog.configure(
        processors=list(LOG_PROCESSORS),
        wrapper_class=structlog.make_filtering_bound_logger(number),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    clear_contextvars()
    bind_contextvars(service=service_name)
    return number


@contextmanager
def request_log_context(request: Request) -> Iterator[str]:
    """Bind the request id, method and path to every event logged while handling ``request``.

    A caller-supplied ``X-Request-ID`` is kept so log lines can be joined
    with the edge that forwarded the request.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex[:16]
    with bound_contextvars(request_id=request_id, method=request.method, path=request.url.path):
        yield request_id


def parse_otlp_headers(headers: Optional[str]) -> Dict[str, str]:
    pairs = (item.partition("=") for item in (headers or "").split(","))
    return {key.strip(): value.strip() for key, _, value in pairs if key.strip() and value.strip()}


def _span_processor(endpoint: Optional[str], headers: Optional[str]) -> SpanProcessor:
    if not endpoint:
        # keeps local runs and tests free of network traffic
        return SimpleSpanProcessor(InMemorySpanExporter())
    return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> TracerProvider:
    """Install the process-wide tracer provider, or return the one already installed."""
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        return current

    ratio = min(1.0, max(0.0, sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.version": __version__}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    provider.add_span_processor(_span_processor(endpoint, headers))
    trace.set_tracer_provider(provider)
    return provider


def instrument_fastapi_app(app, provider: Optional[TracerProvider] = None) -> None:
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=provider or trace.get_tracer_provider(),
        excluded_urls=UNTRACED_ROUTES,
    )
