"""Caching reverse proxy serving signed S3 objects and resized image variants."""

__version__ = "1.0.0"
