"""Data models shared by the options codec, cache store and pipeline."""

from __future__ import annotations

from typing import Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


ImageFit = Literal["cover", "contain", "fill", "inside", "outside"]
ImagePosition = Literal[
    "top",
    "right-top",
    "right",
    "right-bottom",
    "bottom",
    "left-bottom",
    "left",
    "left-top",
    "center",
    "entropy",
    "attention",
]
ImageFormat = Literal["jpeg", "png", "webp", "raw"]


class CacheKey(NamedTuple):
    """Object key plus the ordered labels of the transform applied to it."""

    object_key: str
    labels: tuple[str, ...] = ()


class FileOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    no_cache: bool = False
    mime_type: Optional[str] = None


class ImageOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    fit: ImageFit = "cover"
    position: ImagePosition = "center"
    format: ImageFormat = "raw"
