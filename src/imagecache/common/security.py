"""URL signature checks and endpoint access guards."""

from __future__ import annotations

import hashlib
import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status

from .errors import InvalidSignature, UnsupportedSignatureType


SHARED_HMAC_SIGNATURE = "shm"


def generate_signature(secret: str, options: str, object_path: str) -> str:
    """Hex HMAC-SHA256 of ``options + "/" + object_path`` under ``secret``."""
    message = f"{options}/{object_path}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign(secret: str, options: str, object_path: str) -> str:
    return f"{SHARED_HMAC_SIGNATURE}:{generate_signature(secret, options, object_path)}"


def verify_signature(secret: str, options: str, object_path: str, token: str) -> None:
    """Raise unless ``token`` is a valid signature for the option string and path.

    ``options`` must be the raw option string exactly as it appeared in the URL.
    """
    signature_type, separator, value = token.partition(":")
    if not separator or signature_type != SHARED_HMAC_SIGNATURE:
        raise UnsupportedSignatureType()

    expected = generate_signature(secret, options, object_path)
    if not hmac.compare_digest(expected.encode("ascii"), value.encode("utf-8")):
        raise InvalidSignature()


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow metrics scrapes with the bearer token, or from loopback when none is set."""
    if token:
        supplied = request.headers.get("authorization", "")
        if not hmac.compare_digest(supplied.encode("utf-8"), f"Bearer {token}".encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    host = request.client.host if request.client else None
    try:
        loopback = host is not None and ip_address(host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
