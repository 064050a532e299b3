"""Slug and citation id helpers.

Citation ids look like KB:<layer>:<slug>:v<version>. This module is the
only place that builds or parses them.
"""

from __future__ import annotations

import re

SLUG_MAX_LENGTH = 50

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")
_VERSION_SUFFIX = re.compile(r":v(\d+)$")


def generate_slug(title: str) -> str:
    """Lowercase, underscore-separated, at most 50 characters."""
    slug = _SLUG_SEPARATORS.sub("_", title.lower()).strip("_")
    return slug[:SLUG_MAX_LENGTH]


def generate_citation_id(layer: str, slug: str, version: int = 1) -> str:
    return f"KB:{layer}:{slug}:v{version}"


def parse_citation_version(citation_id: str | None) -> int:
    """Version number from a citation id's :vN suffix, 0 when absent."""
    match = _VERSION_SUFFIX.search(citation_id or "")
    return int(match.group(1)) if match else 0
