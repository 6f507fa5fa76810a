"""In-memory implementation of the history ledger."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from ..constants import HISTORY_PAGE_SIZE
from ..contracts import EntityType, HistoryStatus
from .models import HistoryEntry, HistorySummary, empty_counts
from .repository import HistoryRepository


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _recency(entry: HistoryEntry) -> Tuple[datetime, int]:
    return _aware(entry.created_at), entry.id or 0


def latest_per_key(entries: Iterable[HistoryEntry]) -> List[HistoryEntry]:
    """Keep the newest row per ``(entity_type, entity_id, action)``."""
    latest: Dict[Tuple[str, str, str], HistoryEntry] = {}
    for entry in entries:
        key = (entry.entity_type.value, entry.entity_id, entry.action)
        current = latest.get(key)
        if current is None or _recency(entry) > _recency(current):
            latest[key] = entry
    return list(latest.values())


class InMemoryHistoryRepository(HistoryRepository):
    """Keep ledger rows in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._rows: List[HistoryEntry] = []
        self._next_id = 0

    async def ensure_schema(self) -> None:
        return None

    async def record(self, entry: HistoryEntry) -> HistoryEntry:
        self._next_id += 1
        row = entry.model_copy(
            update={
                "id": self._next_id,
                "created_at": _aware(entry.created_at or datetime.now(timezone.utc)),
            },
            deep=True,
        )
        self._rows.append(row)
        return row.model_copy(deep=True)

    async def latest_by_entity(
        self, entity_type: EntityType, ids: List[str], action: Optional[str] = None
    ) -> Dict[str, HistoryEntry]:
        wanted = set(ids)
        result: Dict[str, HistoryEntry] = {}
        for row in self._rows:
            if row.entity_type != entity_type or row.entity_id not in wanted:
                continue
            if action is not None and row.action != action:
                continue
            current = result.get(row.entity_id)
            if current is None or _recency(row) > _recency(current):
                result[row.entity_id] = row
        return {k: v.model_copy(deep=True) for k, v in result.items()}

    async def summary(
        self,
        window_days: int,
        status: Optional[HistoryStatus] = None,
        page_size: int = HISTORY_PAGE_SIZE,
    ) -> HistorySummary:
        cutoff = datetime.now(timezone.utc) - timedelta(days=window_days)
        latest = latest_per_key(r for r in self._rows if _aware(r.created_at) >= cutoff)
        newest_first = sorted(latest, key=_recency, reverse=True)

        counts = empty_counts()
        for row in latest:
            if status is None or row.status == status:
                counts[row.status.value] += 1

        approvals = [r for r in newest_first if r.status == HistoryStatus.AWAITING_APPROVAL]
        return HistorySummary(
            window_days=window_days,
            status_filter=status,
            counts=counts,
            approvals=[r.model_copy(deep=True) for r in approvals[:page_size]],
            activity=[r.model_copy(deep=True) for r in newest_first[:page_size]],
        )

    async def close(self) -> None:
        return None
