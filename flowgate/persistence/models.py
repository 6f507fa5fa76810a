"""Data models for the deployment history ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contracts import EntityType, HistoryStatus


class HistoryEntry(BaseModel):
    """One append-only ledger row."""

    id: Optional[int] = None
    entity_type: EntityType
    entity_id: str
    entity_name: Optional[str] = None
    action: str
    status: HistoryStatus
    build_url: Optional[str] = None
    details: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class HistorySummary(BaseModel):
    """Dashboard view over the latest row per entity and action."""

    window_days: int
    status_filter: Optional[HistoryStatus] = None
    counts: Dict[str, int] = Field(default_factory=dict)
    approvals: List[HistoryEntry] = Field(default_factory=list)
    activity: List[HistoryEntry] = Field(default_factory=list)


def empty_counts() -> Dict[str, int]:
    return {status.value: 0 for status in HistoryStatus}


def normalize_status_filter(status: Optional[str]) -> Optional[HistoryStatus]:
    """``None`` or ``"ALL"`` means no filter; anything else must be a status."""
    if status is None:
        return None
    if isinstance(status, HistoryStatus):
        return status
    value = str(status).strip().upper()
    if not value or value == "ALL":
        return None
    return HistoryStatus(value)
