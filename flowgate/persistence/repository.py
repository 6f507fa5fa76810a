"""Repository abstraction for the deployment history ledger."""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol

from ..constants import HISTORY_PAGE_SIZE
from ..contracts import EntityType, HistoryStatus
from .models import HistoryEntry, HistorySummary


class HistoryRepository(Protocol):
    """Protocol for ledger backends. Rows are only ever inserted."""

    async def ensure_schema(self) -> None:
        """Create the ledger table and indexes if they do not exist."""

    async def record(self, entry: HistoryEntry) -> HistoryEntry:
        """Append ``entry`` and return it with ``id`` and ``created_at`` set."""

    async def latest_by_entity(
        self, entity_type: EntityType, ids: List[str], action: Optional[str] = None
    ) -> Dict[str, HistoryEntry]:
        """Most recent row per entity id, optionally restricted to one action."""

    async def summary(
        self,
        window_days: int,
        status: Optional[HistoryStatus] = None,
        page_size: int = HISTORY_PAGE_SIZE,
    ) -> HistorySummary:
        """Health counts, pending approvals and recent activity in the window."""

    async def close(self) -> None:
        """Release backend resources."""
