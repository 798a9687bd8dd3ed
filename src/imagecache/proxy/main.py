"""Uvicorn entrypoint for the image cache proxy."""

from __future__ import annotations

import uvicorn

from ..common.settings import ImageCacheSettings
from .app import create_app


def run() -> None:
    settings = ImageCacheSettings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
