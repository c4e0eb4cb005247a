"""
Abstract Context Store — Interface for all storage backends.

Implementations:
  - SqlContextStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryContextStore (dict-based, single-process, no persistence)
  - FileContextStore     (JSON files on disk, single-process, durable)

A store does two things for the engine: it resolves an actor's external id
(the transport's user id) to the internal id of the human record, and it
keeps one serialized context blob per actor. The blob is opaque to the store;
UserContextManager owns its format.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class BaseContextStore(ABC):
    """Interface that all context store backends must implement."""

    # ── Identity ──────────────────────────────────────────────

    @abstractmethod
    async def resolve_internal_id(self, external_id: int) -> Optional[int]:
        """Internal human id for an external actor id, or None when unknown."""
        ...

    @abstractmethod
    async def list_external_ids(self) -> list[int]:
        """Every actor the store can resolve."""
        ...

    # ── Context blobs ─────────────────────────────────────────

    @abstractmethod
    async def load_context_blob(self, external_id: int) -> Optional[str]:
        ...

    @abstractmethod
    async def save_context_blob(self, external_id: int, blob: str) -> None:
        ...
