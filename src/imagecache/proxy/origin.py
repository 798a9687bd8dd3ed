"""S3-compatible origin holding the untransformed source objects."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import ClientError
from opentelemetry import trace

from ..common.errors import OriginError, OriginNotFound
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import ImageCacheSettings


LOGGER = structlog.get_logger("imagecache.origin")
TRACER = trace.get_tracer("imagecache.origin")

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

ORIGIN_FETCH_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imagecache_origin_fetches_total", "Objects requested from the origin")
)
ORIGIN_NOT_FOUND_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imagecache_origin_not_found_total", "Origin requests for missing objects")
)


class OriginObject:
    """Body of a fetched object; read it once, either streamed or whole."""

    def __init__(self, key: str, body: Any, content_length: Optional[int] = None, content_type: Optional[str] = None):
        self.key = key
        self.content_length = content_length
        self.content_type = content_type
        self._body = body

    async def iter_chunks(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(self._body.read, chunk_size)
                except Exception as exc:  # noqa: BLE001 - surfaced as an origin failure
                    raise OriginError(f"Failed reading {self.key}: {exc}") from exc
                if not chunk:
                    return
                yield chunk
        finally:
            close = getattr(self._body, "close", None)
            if close is not None:
                close()

    async def read(self) -> bytes:
        chunks = [chunk async for chunk in self.iter_chunks()]
        return b"".join(chunks)


class S3Origin:
    def __init__(self, settings: ImageCacheSettings):
        self._bucket = settings.aws_s3_bucket
        self._endpoint = settings.aws_endpoint
        session = boto3.session.Session()
        client_args: dict[str, Any] = {
            "endpoint_url": settings.aws_endpoint,
            "region_name": settings.aws_region,
            "aws_access_key_id": settings.aws_access_key_id,
            "aws_secret_access_key": (
                settings.aws_secret_access_key.get_secret_value() if settings.aws_secret_access_key else None
            ),
        }
        if settings.aws_force_path_style:
            client_args["config"] = Config(s3={"addressing_style": "path"})
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v is not None})

    async def fetch(self, key: str) -> OriginObject:
        """Start reading ``key``; raises ``OriginNotFound`` or ``OriginError``."""
        ORIGIN_FETCH_COUNTER.inc()
        with TRACER.start_as_current_span("origin.fetch", attributes={"imagecache.object_key": key}):
            try:
                response = await asyncio.to_thread(self._client.get_object, Bucket=self._bucket, Key=key)
            except self._client.exceptions.NoSuchKey as exc:  # type: ignore[attr-defined]
                raise self._not_found(key) from exc
            except ClientError as exc:
                code = str(exc.response.get("Error", {}).get("Code", ""))
                if code in NOT_FOUND_CODES:
                    raise self._not_found(key) from exc
                LOGGER.warning("origin_fetch_failed", object_key=key, code=code)
                raise OriginError(f"Origin request failed for {key}") from exc
            except Exception as exc:  # noqa: BLE001 - BotoCoreError, network failures
                LOGGER.warning("origin_fetch_failed", object_key=key, error=str(exc))
                raise OriginError(f"Origin request failed for {key}") from exc
        return OriginObject(
            key,
            response["Body"],
            content_length=response.get("ContentLength"),
            content_type=response.get("ContentType"),
        )

    async def fetch_bytes(self, key: str) -> bytes:
        origin_object = await self.fetch(key)
        return await origin_object.read()

    def _not_found(self, key: str) -> OriginNotFound:
        ORIGIN_NOT_FOUND_COUNTER.inc()
        LOGGER.debug("origin_not_found", object_key=key)
        return OriginNotFound()

    def status(self) -> dict[str, object]:
        return {"origin": "s3", "bucket": self._bucket, "endpoint": self._endpoint}
