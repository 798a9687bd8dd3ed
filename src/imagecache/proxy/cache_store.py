"""Local disk cache for origin objects and their transformed variants."""

from __future__ import annotations

import asyncio
import os
import stat
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Union
from urllib.parse import quote
from uuid import uuid4

import structlog
from opentelemetry import trace

from ..common.errors import CacheWriteError
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.schemas import CacheKey


LOGGER = structlog.get_logger("imagecache.cache_store")
TRACER = trace.get_tracer("imagecache.cache_store")

# encodeURIComponent leaves these unescaped; keeping the same alphabet keeps
# file names stable for caches populated by earlier deployments.
_URI_COMPONENT_SAFE = "-_.!~*'()"
# "@" is always percent-encoded in entry names, so temp files never collide.
TEMP_PREFIX = "tmp@"

CACHE_WRITES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imagecache_cache_writes_total", "Cache entries written")
)
CACHE_WRITE_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imagecache_cache_write_failures_total", "Cache writes that failed and were discarded")
)
PENDING_WRITES_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("imagecache_cache_pending_writes", "Background cache writes not yet settled")
)


def encode_component(value: str) -> str:
    encoded = quote(value, safe=_URI_COMPONENT_SAFE)
    if encoded in (".", ".."):
        return encoded.replace(".", "%2E")
    return encoded


def etag_for_mtime_ns(mtime_ns: int) -> str:
    return f"mt_{mtime_ns // 1_000_000}"


def normalize_etag(value: str | None) -> str:
    if not value:
        return ""
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]
    return value


@dataclass(frozen=True)
class CacheMiss:
    pass


@dataclass(frozen=True)
class NotModified:
    etag: str


@dataclass(frozen=True)
class CacheHit:
    etag: str
    size: int
    stream: BinaryIO


CacheLookup = Union[CacheMiss, NotModified, CacheHit]

MISS = CacheMiss()


class FileCacheStore:
    """Maps cache keys to files under ``cache_dir``.

    Writers never touch an entry in place: payloads land in a uniquely named
    temp file that is renamed over the entry once complete, so readers see
    either the previous version or the new one.
    """

    def __init__(self, cache_dir: Path):
        self._cache_dir = Path(cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._pending: set[asyncio.Task] = set()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def path_for(self, key: CacheKey) -> Path:
        name = encode_component(key.object_key)
        if key.labels:
            name += "_" + encode_component("_".join(key.labels))
        return self._cache_dir / name

    async def get(self, key: CacheKey, client_etag: str = "") -> CacheLookup:
        path = self.path_for(key)
        try:
            handle = await asyncio.to_thread(path.open, "rb")
        except OSError:
            return MISS

        try:
            info = os.fstat(handle.fileno())
        except OSError:
            handle.close()
            return MISS
        if not stat.S_ISREG(info.st_mode):
            handle.close()
            return MISS

        etag = etag_for_mtime_ns(info.st_mtime_ns)
        if client_etag and normalize_etag(client_etag) == etag:
            handle.close()
            return NotModified(etag=etag)
        return CacheHit(etag=etag, size=info.st_size, stream=handle)

    async def put(self, key: CacheKey, data: Union[bytes, AsyncIterator[bytes]]) -> bool:
        """Write ``data`` as the new version of ``key``.

        Returns ``False`` when the write was abandoned; the failure is logged
        and never raised.
        """
        path = self.path_for(key)
        temp_path = self._cache_dir / f"{TEMP_PREFIX}{uuid4().hex}"
        with TRACER.start_as_current_span("cache_store.put", attributes={"imagecache.cache_file": path.name}):
            try:
                size = await self._write_temp(temp_path, data)
                await asyncio.to_thread(self._commit, temp_path, path)
            except Exception as exc:  # noqa: BLE001 - caching must never fail a request
                # a tee branch left open would hold back the client side of the stream
                aclose = getattr(data, "aclose", None)
                if aclose is not None:
                    await aclose()
                await asyncio.to_thread(temp_path.unlink, missing_ok=True)
                CACHE_WRITE_FAILURES_COUNTER.inc()
                error = CacheWriteError(f"{type(exc).__name__}: {exc}")
                LOGGER.warning(
                    "cache_write_failed",
                    object_key=key.object_key,
                    labels=list(key.labels),
                    temp_file=temp_path.name,
                    error=error.detail,
                )
                return False
        CACHE_WRITES_COUNTER.inc()
        LOGGER.debug("cache_write", object_key=key.object_key, labels=list(key.labels), bytes=size)
        return True

    def spawn_put(self, key: CacheKey, data: Union[bytes, AsyncIterator[bytes]]) -> asyncio.Task:
        """Start a put in the background and return its task."""
        task = asyncio.get_running_loop().create_task(self.put(key, data))
        self._pending.add(task)
        PENDING_WRITES_GAUGE.inc()
        task.add_done_callback(self._write_settled)
        return task

    def _write_settled(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        PENDING_WRITES_GAUGE.dec()

    async def drain(self) -> None:
        """Wait for every background put started so far."""
        while self._pending:
            await asyncio.wait(list(self._pending))

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def _write_temp(self, temp_path: Path, data: Union[bytes, AsyncIterator[bytes]]) -> int:
        handle = await asyncio.to_thread(temp_path.open, "xb")
        size = 0
        try:
            if isinstance(data, (bytes, bytearray, memoryview)):
                await asyncio.to_thread(handle.write, data)
                size = len(data)
            else:
                async for chunk in data:
                    await asyncio.to_thread(handle.write, chunk)
                    size += len(chunk)
        finally:
            await asyncio.to_thread(handle.close)
        return size

    @staticmethod
    def _commit(temp_path: Path, path: Path) -> None:
        # An entry's etag is its mtime in milliseconds; make sure the new
        # version never shares it with the one being replaced.
        try:
            previous_ms = path.stat().st_mtime_ns // 1_000_000
        except FileNotFoundError:
            previous_ms = None
        if previous_ms is not None:
            written_ms = temp_path.stat().st_mtime_ns // 1_000_000
            if written_ms <= previous_ms:
                bumped = max(time.time_ns(), (previous_ms + 1) * 1_000_000)
                os.utime(temp_path, ns=(bumped, bumped))
        os.replace(temp_path, path)

    def remove_stale_temp_files(self) -> int:
        """Delete temp files left behind by a previous process."""
        removed = 0
        for candidate in self._cache_dir.glob(f"{TEMP_PREFIX}*"):
            try:
                candidate.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        if removed:
            LOGGER.info("cache_temp_files_removed", count=removed)
        return removed

    def status(self) -> dict[str, object]:
        return {
            "backend": "local",
            "cache_dir": str(self._cache_dir),
            "writable": self._cache_dir.is_dir() and os.access(self._cache_dir, os.W_OK),
            "pending_writes": self.pending_writes,
        }
