"""
SqlContextStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Identity and context share the humans table: resolve_internal_id looks up
the row by external_id, the context blob is a TEXT column on the same row.
Saving a blob for an actor with no human row is a no-op (logged); the
engine never creates humans.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import select

from database.models import HumanRow
from database.session import get_session
from database.store_base import BaseContextStore

logger = structlog.get_logger()


class SqlContextStore(BaseContextStore):
    """
    Persistent context store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    async def _find(self, db, external_id: int) -> Optional[HumanRow]:
        stmt = select(HumanRow).where(HumanRow.external_id == int(external_id))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    # ── Identity ───────────────────────────────────────────

    async def resolve_internal_id(self, external_id: int) -> Optional[int]:
        async with get_session() as db:
            row = await self._find(db, external_id)
            return row.id if row else None

    async def list_external_ids(self) -> list[int]:
        async with get_session() as db:
            result = await db.execute(select(HumanRow.external_id).order_by(HumanRow.id))
            return list(result.scalars())

    async def add_human(self, external_id: int, full_name: str = "") -> int:
        """Create the human row for an actor (or return the existing one's id)."""
        async with get_session() as db:
            row = await self._find(db, external_id)
            if row is None:
                row = HumanRow(external_id=int(external_id), full_name=full_name)
                db.add(row)
                await db.flush()
                logger.info("human_created", external_id=external_id, human_id=row.id)
            return row.id

    # ── Context blobs ──────────────────────────────────────

    async def load_context_blob(self, external_id: int) -> Optional[str]:
        async with get_session() as db:
            row = await self._find(db, external_id)
            return row.context_blob if row else None

    async def save_context_blob(self, external_id: int, blob: str) -> None:
        async with get_session() as db:
            row = await self._find(db, external_id)
            if row is None:
                logger.warning("context_save_unknown_human", external_id=external_id)
                return
            row.context_blob = blob
