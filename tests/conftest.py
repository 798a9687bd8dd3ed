from __future__ import annotations

import time
from io import BytesIO
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from imagecache.cli.sign import signed_path
from imagecache.common.settings import ImageCacheSettings
from imagecache.proxy.app import create_app


SECRET = "test-signing-key"
BUCKET = "images"


class FakeBody:
    def __init__(self, payload: bytes) -> None:
        self._buffer = BytesIO(payload)
        self.closed = False

    def read(self, amt: int | None = None) -> bytes:
        return self._buffer.read() if amt is None else self._buffer.read(amt)

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    class _NoSuchKey(Exception):
        pass

    exceptions = SimpleNamespace(NoSuchKey=_NoSuchKey)

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.get_calls: list[str] = []
        self.failure: Exception | None = None
        self.delay = 0.0

    def get_object(self, *, Bucket: str, Key: str):  # noqa: N803 - boto3 keyword names
        self.get_calls.append(Key)
        if self.delay:
            time.sleep(self.delay)
        if self.failure is not None:
            raise self.failure
        if Key not in self.objects:
            raise self._NoSuchKey(Key)
        payload = self.objects[Key]
        return {"Body": FakeBody(payload), "ContentLength": len(payload)}


@pytest.fixture
def fake_s3(monkeypatch: pytest.MonkeyPatch) -> FakeS3Client:
    client = FakeS3Client()

    class DummySession:
        def client(self, *_args, **_kwargs):  # noqa: D401 - mimic boto3 session
            return client

    monkeypatch.setattr("imagecache.proxy.origin.boto3.session.Session", lambda: DummySession())
    return client


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def settings(cache_dir: Path) -> ImageCacheSettings:
    return ImageCacheSettings(
        cache_dir=cache_dir,
        aws_s3_bucket=BUCKET,
        aws_region="us-east-1",
        url_signature_key=SECRET,
        log_level="WARNING",
    )


@pytest.fixture
def client(settings: ImageCacheSettings, fake_s3: FakeS3Client) -> TestClient:
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


def _make_image(size: tuple[int, int] = (400, 200), fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    color = (200, 30, 30, 255) if mode == "RGBA" else (200, 30, 30)
    image = Image.new(mode, size, color)
    buffer = BytesIO()
    image.save(buffer, fmt)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    return _make_image


@pytest.fixture
def signed():
    """Build a signed proxy path with the test secret."""

    def _signed(kind: str, options: str, object_path: str) -> str:
        return signed_path(kind, SECRET, options, object_path)

    return _signed
