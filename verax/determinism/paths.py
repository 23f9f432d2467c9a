"""
Machine-independent forms of filesystem paths and URLs.

Both transforms are idempotent: applying them twice gives the same
result as applying them once.
"""

from __future__ import annotations

import posixpath
import re
from urllib.parse import urlsplit


ABSOLUTE_MARKER = "<abs>"
RUN_MARKER = "<run>"

_DRIVE = re.compile(r"^[A-Za-z]:/")
_RUN_SEGMENT = re.compile(r"(\.verax/runs/)[^/]+")


def is_absolute_path(path: str) -> bool:
    normalized = path.replace("\\", "/")
    return normalized.startswith("/") or bool(_DRIVE.match(normalized))


def normalize_path(path):
    """
    Drop the machine-specific part of a path, keep its presence.

    Paths inside a .verax directory keep everything from .verax on with
    the run id masked. Other absolute paths collapse to <abs>/<basename>.
    Relative paths only get their separators and run ids normalized.
    """
    if not isinstance(path, str) or not path:
        return path

    normalized = path.replace("\\", "/")
    normalized = _RUN_SEGMENT.sub(r"\g<1>" + RUN_MARKER, normalized)

    if not is_absolute_path(normalized):
        return normalized

    anchor = normalized.find("/.verax/")
    if anchor >= 0:
        return normalized[anchor + 1:]

    return f"{ABSOLUTE_MARKER}/{posixpath.basename(normalized.rstrip('/'))}"


def normalize_url(url):
    """Reduce an absolute URL to its path. Anything else is returned unchanged."""
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return parts.path or "/"
