"""Shared utilities."""

from .fs import read_json, write_json_atomic, write_text_atomic
from .slug import abbreviate_slug, slugify, timestamp_token

__all__ = [
    "abbreviate_slug",
    "read_json",
    "slugify",
    "timestamp_token",
    "write_json_atomic",
    "write_text_atomic",
]
