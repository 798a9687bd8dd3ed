"""Cache-aside proxy: options codec, disk cache, origin, transformer and HTTP app."""

from .cache_store import CacheHit, CacheMiss, FileCacheStore, NotModified
from .pipeline import RequestPipeline

__all__ = [
    "CacheHit",
    "CacheMiss",
    "FileCacheStore",
    "NotModified",
    "RequestPipeline",
]
