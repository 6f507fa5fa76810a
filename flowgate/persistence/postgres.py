"""PostgreSQL implementation of the history ledger."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from ..constants import HISTORY_PAGE_SIZE
from ..contracts import EntityType, HistoryStatus
from ..errors import PersistenceError
from .models import HistoryEntry, HistorySummary, empty_counts
from .repository import HistoryRepository

logger = logging.getLogger(__name__)

# Serializes schema creation across processes; CREATE ... IF NOT EXISTS alone
# can still collide on the catalog when two sessions race.
_SCHEMA_LOCK_KEY = 0x666C6F77

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_COLUMNS = (
    "id, entity_type, entity_id, entity_name, action, status, "
    "build_url, details, metadata, created_at"
)

_LATEST_IN_WINDOW = f"""
    WITH latest AS (
        SELECT DISTINCT ON (entity_type, entity_id, action) {_COLUMNS}
        FROM public.deployment_history
        WHERE created_at >= NOW() - make_interval(days => $1)
        ORDER BY entity_type, entity_id, action, created_at DESC, id DESC
    )
"""


def _row_to_entry(row: asyncpg.Record) -> HistoryEntry:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return HistoryEntry(
        id=row["id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        entity_name=row["entity_name"],
        action=row["action"],
        status=row["status"],
        build_url=row["build_url"],
        details=row["details"],
        metadata=metadata or {},
        created_at=row["created_at"],
    )


class PostgresHistoryRepository(HistoryRepository):
    """Persist ledger rows using PostgreSQL.

    Every call is a single short statement on a pooled connection; no
    transaction is held open across build server I/O.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                try:
                    pool = await asyncpg.create_pool(
                        self._dsn, min_size=self._min_size, max_size=self._max_size
                    )
                except _DB_ERRORS as exc:
                    raise PersistenceError(f"Cannot open ledger database: {exc}") from exc
                try:
                    async with pool.acquire() as conn:
                        await self._migrate(conn)
                except _DB_ERRORS as exc:
                    await pool.close()
                    raise PersistenceError(f"Ledger schema migration failed: {exc}") from exc
                self._pool = pool
        return self._pool

    async def _migrate(self, conn: asyncpg.Connection) -> None:
        async with conn.transaction():
            await conn.execute("SELECT pg_advisory_xact_lock($1)", _SCHEMA_LOCK_KEY)
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS public.deployment_history (
                    id BIGSERIAL PRIMARY KEY,
                    entity_type TEXT NOT NULL CHECK (entity_type IN ('WORKFLOW', 'CREDENTIAL')),
                    entity_id TEXT NOT NULL,
                    entity_name TEXT,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('SUCCESS', 'FAILED', 'AWAITING_APPROVAL', 'RUNNING')),
                    build_url TEXT,
                    details TEXT,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            await conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_deployment_history_created_at
                ON public.deployment_history (created_at DESC)
                """
            )
            await conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_deployment_history_status_created
                ON public.deployment_history (status, created_at DESC)
                """
            )
        logger.debug("Ledger schema is up to date")

    async def _fetch(self, query: str, *params: Any) -> List[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            return await pool.fetch(query, *params)
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Ledger query failed: {exc}") from exc

    # ------------------------------------------------------------------
    async def ensure_schema(self) -> None:
        await self._get_pool()

    async def record(self, entry: HistoryEntry) -> HistoryEntry:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                INSERT INTO public.deployment_history
                (entity_type, entity_id, entity_name, action, status, build_url, details, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, COALESCE($9::timestamptz, NOW()))
                RETURNING id, created_at
                """,
                entry.entity_type.value,
                entry.entity_id,
                entry.entity_name,
                entry.action,
                entry.status.value,
                entry.build_url,
                entry.details,
                json.dumps(entry.metadata or {}),
                entry.created_at,
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Ledger insert failed: {exc}") from exc
        return entry.model_copy(
            update={"id": row["id"], "created_at": row["created_at"]}, deep=True
        )

    async def latest_by_entity(
        self, entity_type: EntityType, ids: List[str], action: Optional[str] = None
    ) -> Dict[str, HistoryEntry]:
        if not ids:
            return {}
        rows = await self._fetch(
            f"""
            SELECT DISTINCT ON (entity_id) {_COLUMNS}
            FROM public.deployment_history
            WHERE entity_type = $1
              AND entity_id = ANY($2::text[])
              AND ($3::text IS NULL OR action = $3)
            ORDER BY entity_id, created_at DESC, id DESC
            """,
            entity_type.value,
            list(ids),
            action,
        )
        return {r["entity_id"]: _row_to_entry(r) for r in rows}

    async def summary(
        self,
        window_days: int,
        status: Optional[HistoryStatus] = None,
        page_size: int = HISTORY_PAGE_SIZE,
    ) -> HistorySummary:
        health_rows = await self._fetch(
            f"""{_LATEST_IN_WINDOW}
            SELECT status, COUNT(*)::int AS total
            FROM latest
            WHERE ($2::text IS NULL OR status = $2)
            GROUP BY status
            """,
            window_days,
            status.value if status else None,
        )
        approval_rows = await self._fetch(
            f"""{_LATEST_IN_WINDOW}
            SELECT {_COLUMNS} FROM latest
            WHERE status = 'AWAITING_APPROVAL'
            ORDER BY created_at DESC, id DESC
            LIMIT $2
            """,
            window_days,
            page_size,
        )
        activity_rows = await self._fetch(
            f"""{_LATEST_IN_WINDOW}
            SELECT {_COLUMNS} FROM latest
            ORDER BY created_at DESC, id DESC
            LIMIT $2
            """,
            window_days,
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
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
