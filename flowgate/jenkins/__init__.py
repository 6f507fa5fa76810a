"""Build server integration."""

from __future__ import annotations

from .client import JenkinsClient
from .extract import BuildDocuments, QueueItem, extract_build_state, find_approval

__all__ = [
    "BuildDocuments",
    "JenkinsClient",
    "QueueItem",
    "extract_build_state",
    "find_approval",
]
