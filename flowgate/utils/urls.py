"""URL helpers for talking to the build system."""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urljoin, urlsplit


def ensure_trailing_slash(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


def absolute_url(url: Optional[str], base_url: str) -> Optional[str]:
    """Resolve ``url`` against ``base_url``; absolute URLs pass through."""
    if not url:
        return None
    return urljoin(ensure_trailing_slash(base_url), url)


def encode_job_path(job_path: str) -> str:
    """Turn ``"teamA/sync"`` into ``"job/teamA/job/sync"``.

    Each folder segment is percent-encoded on its own so names with spaces or
    reserved characters survive.
    """
    segments = [s for s in job_path.strip().split("/") if s]
    if not segments:
        raise ValueError("job path must not be empty")
    return "/".join(f"job/{quote(segment, safe='')}" for segment in segments)


def same_host(url: str, base_url: str) -> bool:
    """Return ``True`` when ``url`` targets the same host and port as ``base_url``."""
    try:
        candidate = urlsplit(url)
        allowed = urlsplit(base_url)
    except ValueError:
        return False
    if candidate.scheme not in ("http", "https"):
        return False
    return candidate.netloc.lower() == allowed.netloc.lower()
