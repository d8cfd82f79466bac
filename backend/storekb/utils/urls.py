"""URL normalization and path-glob matching."""

from __future__ import annotations

import fnmatch
from typing import Iterable
from urllib.parse import urldefrag, urljoin, urlsplit, urlunsplit

_SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "#")


def is_http_url(value: str) -> bool:
    parts = urlsplit(value.strip())
    return parts.scheme.lower() in {"http", "https"} and bool(parts.hostname)


def normalize_url(url: str) -> str:
    """Canonical form used as a web job's source_ref.

    Scheme and host are lower-cased, the fragment is dropped and a trailing
    slash is removed from any path other than the root. Query strings are kept.
    """
    parts = urlsplit(url.strip())
    scheme = (parts.scheme or "https").lower()
    netloc = parts.netloc.lower()
    path = parts.path
    if path not in ("", "/"):
        path = path.rstrip("/")
    elif path == "/":
        path = ""
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def same_origin(a: str, b: str) -> bool:
    left, right = urlsplit(a), urlsplit(b)
    return (left.scheme.lower(), left.netloc.lower()) == (right.scheme.lower(), right.netloc.lower())


def resolve_link(href: str, base_url: str) -> str | None:
    """Resolve an anchor href against the page it appeared on."""
    href = (href or "").strip()
    if not href or href.lower().startswith(_SKIPPED_SCHEMES):
        return None
    absolute, _fragment = urldefrag(urljoin(base_url, href))
    if not is_http_url(absolute):
        return None
    return normalize_url(absolute)


def url_path(url: str) -> str:
    return urlsplit(url).path or "/"


def expand_patterns(pattern: str) -> list[str]:
    """Expand a single ``{a,b}`` group into separate glob patterns."""
    part = pattern.strip()
    if not part:
        return []
    if "{" in part and "}" in part:
        prefix = part[: part.index("{")]
        suffix = part[part.index("}") + 1 :]
        options = part[part.index("{") + 1 : part.index("}")].split(",")
        return [f"{prefix}{option.strip()}{suffix}" for option in options]
    return [part]


def path_allowed(path: str, include: Iterable[str], exclude: Iterable[str]) -> bool:
    """Exclude globs win; with no include globs everything else is allowed."""
    candidate = path.lower()
    excluded = [p for pattern in exclude for p in expand_patterns(pattern)]
    if any(fnmatch.fnmatchcase(candidate, p.lower()) for p in excluded):
        return False
    included = [p for pattern in include for p in expand_patterns(pattern)]
    if included:
        return any(fnmatch.fnmatchcase(candidate, p.lower()) for p in included)
    return True


__all__ = [
    "is_http_url",
    "normalize_url",
    "same_origin",
    "resolve_link",
    "url_path",
    "expand_patterns",
    "path_allowed",
]
