"""
InMemoryContextStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlContextStore
  - Safe under asyncio (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseContextStore

logger = structlog.get_logger()


class InMemoryContextStore(BaseContextStore):
    """
    In-memory store with the same interface as SqlContextStore.
    Actors must be registered before they can be resolved.
    """

    def __init__(self):
        self._actors: dict[int, int] = {}              # external_id → internal_id
        self._contexts: dict[int, str] = {}            # external_id → context blob
        logger.info("inmemory_store_initialized")

    # ── Identity ──────────────────────────────────────────

    def register_actor(self, external_id: int, internal_id: int) -> None:
        """Make an actor resolvable (the human record exists)."""
        self._actors[int(external_id)] = int(internal_id)

    async def list_external_ids(self) -> list[int]:
        return list(self._actors)

    async def add_human(self, external_id: int, full_name: str = "") -> int:
        """Register an actor under the next free internal id (or return the existing one)."""
        existing = self._actors.get(int(external_id))
        if existing is not None:
            return existing
        internal_id = max(self._actors.values(), default=0) + 1
        self.register_actor(external_id, internal_id)
        logger.info("human_created", external_id=external_id, human_id=internal_id)
        return internal_id

    async def resolve_internal_id(self, external_id: int) -> Optional[int]:
        return self._actors.get(int(external_id))

    # ── Context blobs ─────────────────────────────────────

    async def load_context_blob(self, external_id: int) -> Optional[str]:
        return self._contexts.get(int(external_id))

    async def save_context_blob(self, external_id: int, blob: str) -> None:
        self._contexts[int(external_id)] = blob

    # ── Stats (for monitoring) ────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "actors": len(self._actors),
            "contexts": len(self._contexts),
        }
