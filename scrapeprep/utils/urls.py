from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit


def normalize_base_url(value: str | None) -> str | None:
    """Drop query and fragment and the trailing slash; None for anything not http(s)."""

    if not value or not value.strip():
        return None
    parts = urlsplit(value.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    normalized = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    return normalized[:-1] if normalized.endswith("/") else normalized


def derive_site(value: str | None) -> str | None:
    if not value:
        return None
    hostname = urlsplit(value.strip()).hostname
    return hostname or None
