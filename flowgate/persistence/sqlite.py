"""SQLite implementation of the history ledger."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..constants import HISTORY_PAGE_SIZE
from ..contracts import EntityType, HistoryStatus
from ..errors import PersistenceError
from .models import HistoryEntry, HistorySummary, empty_counts
from .repository import HistoryRepository

T = TypeVar("T")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_COLUMNS = (
    "id, entity_type, entity_id, entity_name, action, status, "
    "build_url, details, metadata, created_at"
)


def _to_db(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_db(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _row_to_entry(row: sqlite3.Row) -> HistoryEntry:
    return HistoryEntry(
        id=row["id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        entity_name=row["entity_name"],
        action=row["action"],
        status=row["status"],
        build_url=row["build_url"],
        details=row["details"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=_from_db(row["created_at"]),
    )


class SQLiteHistoryRepository(HistoryRepository):
    """Persist ledger rows using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open ledger at {self.db_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS deployment_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL CHECK (entity_type IN ('WORKFLOW', 'CREDENTIAL')),
                    entity_id TEXT NOT NULL,
                    entity_name TEXT,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('SUCCESS', 'FAILED', 'AWAITING_APPROVAL', 'RUNNING')),
                    build_url TEXT,
                    details TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_deployment_history_created_at
                ON deployment_history (created_at DESC)
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_deployment_history_status_created
                ON deployment_history (status, created_at DESC)
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _insert(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.lastrowid

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Ledger query failed: {exc}") from exc

    @staticmethod
    def _cutoff(window_days: int) -> str:
        return _to_db(datetime.now(timezone.utc) - timedelta(days=window_days))

    # ------------------------------------------------------------------
    # Repository API
    async def ensure_schema(self) -> None:
        await self._run(self._ensure_schema)

    async def record(self, entry: HistoryEntry) -> HistoryEntry:
        created_at = entry.created_at or datetime.now(timezone.utc)
        row_id = await self._run(
            self._insert,
            """
            INSERT INTO deployment_history
            (entity_type, entity_id, entity_name, action, status, build_url, details, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            entry.entity_type.value,
            entry.entity_id,
            entry.entity_name,
            entry.action,
            entry.status.value,
            entry.build_url,
            entry.details,
            json.dumps(entry.metadata or {}),
            _to_db(created_at),
        )
        return entry.model_copy(
            update={"id": row_id, "created_at": _from_db(_to_db(created_at))}, deep=True
        )

    async def latest_by_entity(
        self, entity_type: EntityType, ids: List[str], action: Optional[str] = None
    ) -> Dict[str, HistoryEntry]:
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        params: List[Any] = [entity_type.value, *ids]
        action_clause = ""
        if action is not None:
            action_clause = "AND action = ?"
            params.append(action)
        rows = await self._run(
            self._fetchall,
            f"""
            WITH ranked AS (
                SELECT {_COLUMNS},
                       ROW_NUMBER() OVER (
                           PARTITION BY entity_id ORDER BY created_at DESC, id DESC
                       ) AS rn
                FROM deployment_history
                WHERE entity_type = ? AND entity_id IN ({placeholders}) {action_clause}
            )
            SELECT {_COLUMNS} FROM ranked WHERE rn = 1
            """,
            *params,
        )
        return {r["entity_id"]: _row_to_entry(r) for r in rows}

    async def summary(
        self,
        window_days: int,
        status: Optional[HistoryStatus] = None,
        page_size: int = HISTORY_PAGE_SIZE,
    ) -> HistorySummary:
        cutoff = self._cutoff(window_days)
        latest = f"""
            WITH latest AS (
                SELECT {_COLUMNS} FROM (
                    SELECT {_COLUMNS},
                           ROW_NUMBER() OVER (
                               PARTITION BY entity_type, entity_id, action
                               ORDER BY created_at DESC, id DESC
                           ) AS rn
                    FROM deployment_history
                    WHERE created_at >= ?
                ) WHERE rn = 1
            )
        """

        health_params: List[Any] = [cutoff]
        status_clause = ""
        if status is not None:
            status_clause = "WHERE status = ?"
            health_params.append(status.value)
        health_rows = await self._run(
            self._fetchall,
            f"{latest} SELECT status, COUNT(*) AS total FROM latest {status_clause} GROUP BY status",
            *health_params,
        )
        approval_rows = await self._run(
            self._fetchall,
            f"""{latest}
            SELECT {_COLUMNS} FROM latest
            WHERE status = 'AWAITING_APPROVAL'
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            cutoff,
            page_size,
        )
        activity_rows = await self._run(
            self._fetchall,
            f"""{latest}
            SELECT {_COLUMNS} FROM latest
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            cutoff,
            page_size,
        )

        counts = empty_counts()
        for row in health_rows:
            counts[row["status"]] = row["total"]
        return HistorySummary(
            window_days=window_days,
            status_filter=status,
            counts=counts,
            approvals=[_row_to_entry(r) for r in approval_rows],
            activity=[_row_to_entry(r) for r in activity_rows],
        )

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
