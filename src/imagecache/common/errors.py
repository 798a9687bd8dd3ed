"""Error taxonomy for the proxy.

Every error a request can end with carries the HTTP status it maps to and a
short plain-text detail. ``CacheWriteError`` never reaches a client: cache
population failures are logged and swallowed by the cache store.
"""

from __future__ import annotations

from fastapi import status


class ProxyError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class UnsupportedSignatureType(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid signature type"


class InvalidSignature(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Invalid signature"


class InvalidOptionValue(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid options"


class OriginNotFound(ProxyError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class OriginError(ProxyError):
    pass


class TransformError(ProxyError):
    pass


class CacheWriteError(ProxyError):
    pass
