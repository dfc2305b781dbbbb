"""Helpers for building filesystem-safe names for snapshots and run logs."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 60) -> str:
    """Normalise ``value`` into a lowercase slug usable inside file names."""
    source = (value or "").strip().lower() or fallback.lower()
    slug = _HYPHEN_COLLAPSE.sub("-", _UNSAFE_PATTERN.sub("-", source)).strip("-.")
    if not slug:
        slug = fallback.lower() or "item"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 60) -> str:
    """Trim ``segment`` to ``max_length`` keeping it unique with a short digest."""
    if len(segment) <= max_length:
        return segment
    digest = hashlib.sha256(segment.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = segment[:prefix_length].rstrip("-") or segment[:prefix_length]
    return f"{prefix}-{digest}"


def timestamp_token(moment: datetime | None = None) -> str:
    """Return a sortable UTC timestamp with microsecond precision."""
    value = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return value.strftime("%Y%m%dT%H%M%S") + f"{value.microsecond:06d}Z"


__all__ = ["abbreviate_slug", "slugify", "timestamp_token"]
