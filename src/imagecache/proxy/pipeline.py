"""Cache-aside request handling for original files and image variants."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from fastapi import Response, status
from fastapi.responses import StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import CacheKey, FileOptions, ImageOptions
from .cache_store import CacheHit, FileCacheStore, NotModified
from .options import labels_from_image_options, mime_type_for_format
from .origin import S3Origin
from .single_flight import SingleFlight
from .streams import StreamTee, TeeBranch, iter_file
from .transform import ImageTransformer


LOGGER = structlog.get_logger("imagecache.pipeline")
TRACER = trace.get_tracer("imagecache.pipeline")

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("imagecache_cache_hits_total", "Responses served from the cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("imagecache_cache_misses_total", "Cache lookups that missed"))
NOT_MODIFIED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imagecache_not_modified_total", "Conditional requests answered with 304")
)


async def _settle(write: asyncio.Task) -> None:
    await asyncio.wait([write])


async def _stream_branch(branch: TeeBranch) -> AsyncIterator[bytes]:
    try:
        async for chunk in branch:
            yield chunk
    finally:
        await branch.aclose()


async def _finish_stream(branch: TeeBranch, write: asyncio.Task) -> None:
    # the body generator may never have started; detach it so the cache write can finish
    await branch.aclose()
    await _settle(write)


@dataclass(frozen=True)
class RenderedImage:
    data: bytes
    write: asyncio.Task


class RequestPipeline:
    """Serves objects from the cache, falling back to the origin on a miss.

    Cache population is fire-and-forget for both variants; the response only
    waits for the write in its background step, after the body went out.
    """

    def __init__(
        self,
        cache: FileCacheStore,
        origin: S3Origin,
        transformer: ImageTransformer,
        *,
        single_flight: Optional[SingleFlight[CacheKey, RenderedImage]] = None,
        chunk_size: int = 64 * 1024,
    ):
        self.cache = cache
        self.origin = origin
        self.transformer = transformer
        self.single_flight = single_flight
        self.chunk_size = chunk_size

    async def serve_file(self, object_path: str, options: FileOptions, client_etag: str = "") -> Response:
        key = CacheKey(object_path)
        with TRACER.start_as_current_span("pipeline.file", attributes={"imagecache.object_key": object_path}):
            if options.no_cache:
                LOGGER.debug("cache_bypassed", object_path=object_path)
            else:
                cached = await self._from_cache(key, client_etag, options.mime_type)
                if cached is not None:
                    return cached

            origin_object = await self.origin.fetch(object_path)
            client_stream, cache_stream = StreamTee(origin_object.iter_chunks(self.chunk_size)).branches()
            write = self.cache.spawn_put(key, cache_stream)
            headers = {}
            if origin_object.content_length is not None:
                headers["Content-Length"] = str(origin_object.content_length)
            return StreamingResponse(
                _stream_branch(client_stream),
                media_type=options.mime_type,
                headers=headers,
                background=BackgroundTask(_finish_stream, client_stream, write),
            )

    async def serve_image(self, object_path: str, options: ImageOptions, client_etag: str = "") -> Response:
        key = CacheKey(object_path, tuple(labels_from_image_options(options)))
        media_type = mime_type_for_format(options.format)
        with TRACER.start_as_current_span(
            "pipeline.image",
            attributes={"imagecache.object_key": object_path, "imagecache.labels": list(key.labels)},
        ):
            cached = await self._from_cache(key, client_etag, media_type)
            if cached is not None:
                return cached

            if self.single_flight is not None:
                rendered = await self.single_flight.do(key, lambda: self._render(key, options))
            else:
                rendered = await self._render(key, options)
            return Response(
                content=rendered.data,
                media_type=media_type,
                background=BackgroundTask(_settle, rendered.write),
            )

    async def _render(self, key: CacheKey, options: ImageOptions) -> RenderedImage:
        source = await self.origin.fetch_bytes(key.object_key)
        data = await self.transformer.transform(source, options)
        LOGGER.debug("image_rendered", object_path=key.object_key, labels=list(key.labels), bytes=len(data))
        return RenderedImage(data=data, write=self.cache.spawn_put(key, data))

    async def _from_cache(self, key: CacheKey, client_etag: str, media_type: Optional[str]) -> Optional[Response]:
        lookup = await self.cache.get(key, client_etag)
        if isinstance(lookup, NotModified):
            NOT_MODIFIED_COUNTER.inc()
            LOGGER.debug("cache_not_modified", object_path=key.object_key, etag=lookup.etag)
            return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers={"ETag": lookup.etag})
        if isinstance(lookup, CacheHit):
            HIT_COUNTER.inc()
            LOGGER.debug("cache_hit", object_path=key.object_key, etag=lookup.etag, bytes=lookup.size)
            return StreamingResponse(
                iter_file(lookup.stream, self.chunk_size),
                media_type=media_type,
                headers={"ETag": lookup.etag, "Content-Length": str(lookup.size)},
            )
        MISS_COUNTER.inc()
        LOGGER.debug("cache_miss", object_path=key.object_key, labels=list(key.labels))
        return None
