"""Lookup of credentials already present in production."""

from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Set

import asyncpg

from ..errors import PersistenceError


class ProductionCredentialIndex(Protocol):
    async def existing_ids(self, ids: List[str]) -> Set[str]:
        """Return the subset of ``ids`` that exist in production."""


class InMemoryCredentialIndex:
    """Fixed set of production credential ids, for tests and dry runs."""

    def __init__(self, ids: Optional[Iterable[str]] = None) -> None:
        self._ids = {str(i) for i in ids or ()}

    async def existing_ids(self, ids: List[str]) -> Set[str]:
        return {i for i in ids if i in self._ids}


class PostgresCredentialIndex:
    """Query the production workflow engine's credential table."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    async def existing_ids(self, ids: List[str]) -> Set[str]:
        if not ids:
            return set()
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise PersistenceError(f"Cannot reach production database: {exc}") from exc
        try:
            rows = await conn.fetch(
                """
                SELECT CAST(id AS TEXT) AS id
                FROM public.credentials_entity
                WHERE CAST(id AS TEXT) = ANY($1::text[])
                """,
                list(ids),
            )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Production credential lookup failed: {exc}") from exc
        finally:
            await conn.close()
        return {r["id"] for r in rows}
