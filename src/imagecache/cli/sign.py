"""CLI to build signed proxy URLs."""

from __future__ import annotations

import argparse
import json
import os
from typing import Optional, Sequence
from urllib.parse import quote

from ..common.security import sign


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sign a /file or /image proxy path")
    parser.add_argument("kind", choices=["file", "image"], help="Route to sign for")
    parser.add_argument("object_path", help="Object key in the origin bucket")
    parser.add_argument(
        "--options",
        default=None,
        help="Option string, e.g. 'w:320+h:240+webp' (default: 'raw' for images, 'm:application/octet-stream' for files)",
    )
    parser.add_argument(
        "--secret",
        default=os.environ.get("URL_SIGNATURE_KEY"),
        help="Signing secret (default: $URL_SIGNATURE_KEY)",
    )
    parser.add_argument("--base-url", default="", help="Prefix prepended to the signed path")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of plain text")
    args = parser.parse_args(argv)
    if not args.secret:
        parser.error("a signing secret is required (--secret or URL_SIGNATURE_KEY)")
    if args.options is None:
        args.options = "raw" if args.kind == "image" else "m:application/octet-stream"
    return args


def signed_path(kind: str, secret: str, options: str, object_path: str) -> str:
    signature = sign(secret, options, object_path)
    return f"/{kind}/{signature}/{quote(options, safe='+:')}/{quote(object_path, safe='/')}"


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    path = signed_path(args.kind, args.secret, args.options, args.object_path)
    url = args.base_url.rstrip("/") + path

    if args.json:
        print(json.dumps({"kind": args.kind, "object_path": args.object_path, "options": args.options, "url": url}, indent=2))
    else:
        print(url)


if __name__ == "__main__":
    main()
