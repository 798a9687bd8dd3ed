"""Compact option strings: ``w:100+h:50+contain+webp``.

Tokens are joined with ``+``; each token is ``key[:value]`` and a bare key
reads as ``"true"``. Unknown keys are carried through and ignored by the
typed readers.
"""

from __future__ import annotations

import re
from typing import Mapping, Optional

from pydantic import ValidationError

from ..common.errors import InvalidOptionValue
from ..common.schemas import FileOptions, ImageFormat, ImageOptions


FIT_FLAGS = ("cover", "contain", "fill", "inside", "outside")
POSITION_FLAGS = (
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
)
FORMAT_FLAGS = ("jpeg", "png", "webp", "raw")

MIME_TYPES: dict[str, str] = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

_DIMENSION_RE = re.compile(r"[0-9]+")


def parse_options(raw: str) -> dict[str, str]:
    options: dict[str, str] = {}
    for token in raw.split("+"):
        key, separator, value = token.partition(":")
        options[key] = value if separator else "true"
    return options


def read_file_options(options: Mapping[str, str]) -> FileOptions:
    return FileOptions(no_cache="nc" in options, mime_type=options.get("m") or None)


def _read_dimension(options: Mapping[str, str], key: str, name: str, limit: Optional[int]) -> Optional[int]:
    raw = options.get(key)
    if raw is None:
        return None
    if not _DIMENSION_RE.fullmatch(raw):
        raise InvalidOptionValue(f"Invalid options: invalid {name} value {raw!r}")
    value = int(raw)
    if limit is not None and value > limit:
        raise InvalidOptionValue(f"Invalid options: {name} exceeds {limit}")
    # zero means "not constrained", same as leaving the key out
    return value or None


def _last_flag(options: Mapping[str, str], flags: tuple[str, ...], default: str) -> str:
    selected = default
    for flag in flags:
        if flag in options:
            selected = flag
    return selected


def read_image_options(options: Mapping[str, str], *, max_dimension: Optional[int] = None) -> ImageOptions:
    """Build typed image options.

    When several flags of one category are present the one listed last in the
    category's flag tuple wins, regardless of URL order.
    """
    width = _read_dimension(options, "w", "width", max_dimension)
    height = _read_dimension(options, "h", "height", max_dimension)
    try:
        return ImageOptions(
            width=width,
            height=height,
            fit=_last_flag(options, FIT_FLAGS, "cover"),
            position=_last_flag(options, POSITION_FLAGS, "center"),
            format=_last_flag(options, FORMAT_FLAGS, "raw"),
        )
    except ValidationError as exc:
        raise InvalidOptionValue(f"Invalid options: {exc.errors()[0]['msg']}") from exc


def labels_from_image_options(options: ImageOptions) -> list[str]:
    """Cache labels in fixed order: width, height, fit, format.

    Fit and format share the ``f_`` prefix; existing cache file names depend
    on it.
    """
    labels: list[str] = []
    if options.width:
        labels.append(f"w_{options.width}")
    if options.height:
        labels.append(f"h_{options.height}")
    labels.append(f"f_{options.fit}")
    labels.append(f"f_{options.format}")
    return labels


def mime_type_for_format(image_format: ImageFormat) -> Optional[str]:
    return MIME_TYPES.get(image_format)
