"""HTTP surface of the image cache proxy."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Callable, Optional, TypeVar
from urllib.parse import unquote

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace
from structlog.contextvars import bind_contextvars

from ..common.errors import ProxyError
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import (
    REQUEST_ID_HEADER,
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
    request_log_context,
)
from ..common.schemas import FileOptions, ImageOptions
from ..common.security import require_metrics_access, verify_signature
from ..common.settings import ImageCacheSettings
from .cache_store import FileCacheStore
from .options import parse_options, read_file_options, read_image_options
from .origin import S3Origin
from .pipeline import RequestPipeline
from .single_flight import SingleFlight
from .transform import ImageTransformer


SERVICE_NAME = "imagecache.proxy"

OptionsT = TypeVar("OptionsT", FileOptions, ImageOptions)

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("imagecache_requests_total", "Total proxy requests"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "imagecache_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Proxy request latency",
    )
)
TRACER = trace.get_tracer(SERVICE_NAME)


class ProxyState:
    def __init__(self, settings: ImageCacheSettings, cache: FileCacheStore, origin: S3Origin, pipeline: RequestPipeline):
        self.settings = settings
        self.cache = cache
        self.origin = origin
        self.pipeline = pipeline
        self.logger = structlog.get_logger(SERVICE_NAME)

    def read_request(
        self,
        kind: str,
        signature: str,
        raw_options: str,
        object_path: str,
        reader: Callable[[dict[str, str]], OptionsT],
    ) -> OptionsT:
        """Check the URL signature, then decode the options. No I/O happens before both pass."""
        # scoped to this request's handler task; pipeline and store events inherit it
        bind_contextvars(kind=kind, object_path=object_path)
        options = parse_options(raw_options)
        self.logger.debug("request_received", options=options)
        try:
            verify_signature(self.settings.url_signature_key.get_secret_value(), raw_options, object_path, signature)
        except ProxyError as exc:
            self.logger.debug("signature_rejected", reason=exc.detail)
            raise
        return reader(options)


def split_signed_path(request: Request, prefix: str) -> tuple[str, str, str]:
    """Split ``<signature>/<options>/<object path>`` off the undecoded request path.

    Segments are separated before percent-decoding so an option value may
    carry an encoded slash (``m:image%2Fpng``).
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.split(b"?", 1)[0].decode("utf-8", "replace") if raw_path else request.url.path
    if not path.startswith(prefix):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    parts = path[len(prefix):].split("/", 2)
    if len(parts) != 3 or not all(parts):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    signature, options, object_path = (unquote(part) for part in parts)
    return signature, options, object_path


def build_pipeline(settings: ImageCacheSettings) -> tuple[FileCacheStore, S3Origin, RequestPipeline]:
    cache = FileCacheStore(settings.cache_dir)
    origin = S3Origin(settings)
    pipeline = RequestPipeline(
        cache,
        origin,
        ImageTransformer(),
        single_flight=SingleFlight() if settings.coalesce_misses else None,
        chunk_size=settings.stream_chunk_bytes,
    )
    return cache, origin, pipeline


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def create_app(settings: Optional[ImageCacheSettings] = None) -> FastAPI:
    settings = settings or ImageCacheSettings()
    configure_logging(SERVICE_NAME, settings.log_level)
    tracer_provider = configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    cache, origin, pipeline = build_pipeline(settings)
    state = ProxyState(settings, cache, origin, pipeline)
    state.logger.info("service_configured", config=settings.describe())

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        cache.remove_stale_temp_files()
        yield
        if cache.pending_writes:
            state.logger.info("cache_writes_draining", pending=cache.pending_writes)
        await cache.drain()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app, tracer_provider)
    app.state.proxy_state = state

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(_request: Request, exc: ProxyError) -> PlainTextResponse:
        detail = exc.detail if exc.status_code < 500 else ProxyError.default_detail
        return PlainTextResponse(detail, status_code=exc.status_code)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        with request_log_context(request) as request_id:
            try:
                response = await call_next(request)
            except Exception:
                duration = time.perf_counter() - start
                LATENCY_HISTOGRAM.observe(duration)
                state.logger.exception("http_request_error", duration_ms=round(duration * 1000, 2))
                response = PlainTextResponse(
                    ProxyError.default_detail, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
                )
                response.headers[REQUEST_ID_HEADER] = request_id
                return response

            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            log_kwargs = {"status": response.status_code, "duration_ms": round(duration * 1000, 2)}
            if response.status_code >= 500:
                state.logger.error("http_request", **log_kwargs)
            elif duration >= 1.0:
                state.logger.warning("http_request", **log_kwargs)
            else:
                state.logger.info("http_request", **log_kwargs)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.get("/file/{signed_path:path}")
    async def get_file(
        request: Request,
        if_none_match: Optional[str] = Header(default=None, alias="If-None-Match"),
        state: ProxyState = Depends(get_state),
    ) -> Response:
        signature, options, object_path = split_signed_path(request, "/file/")
        file_options = state.read_request("file", signature, options, object_path, read_file_options)
        return await state.pipeline.serve_file(object_path, file_options, if_none_match or "")

    @app.get("/image/{signed_path:path}")
    async def get_image(
        request: Request,
        if_none_match: Optional[str] = Header(default=None, alias="If-None-Match"),
        state: ProxyState = Depends(get_state),
    ) -> Response:
        signature, options, object_path = split_signed_path(request, "/image/")
        max_dimension = state.settings.max_image_dimension
        image_options = state.read_request(
            "image",
            signature,
            options,
            object_path,
            lambda parsed: read_image_options(parsed, max_dimension=max_dimension),
        )
        return await state.pipeline.serve_image(object_path, image_options, if_none_match or "")

    @app.get("/status")
    async def status_probe(state: ProxyState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("proxy.status"):
            payload = state.cache.status()
            payload.update(state.origin.status())
            payload["coalesce_misses"] = state.settings.coalesce_misses
            return JSONResponse(payload)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        """Readiness/liveness probe: the cache directory must be writable."""
        backend = state.cache.status()
        health = {"status": "healthy", "checks": {"cache_writable": backend["writable"]}}
        if not backend["writable"]:
            health["status"] = "unhealthy"
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    return app
