"""
Store Factory — Picks the context store backend named in settings.

    database:
      store_backend: memory        # memory | file | sql
      store_file_dir: ./data       # file backend only
      url: sqlite:///./flowbot.db  # sql backend only (bound by init_db at startup)

The first store created becomes the process singleton; get_store() returns
it and reset_store() drops it (tests).

Usage:
    store = create_store(settings.database)
    internal_id = await store.resolve_internal_id(telegram_user_id)
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseContextStore

logger = structlog.get_logger()

STORE_BACKENDS = ("memory", "file", "sql")

_instance: Optional[BaseContextStore] = None


def _build(config: DatabaseConfig) -> BaseContextStore:
    backend = config.store_backend
    if backend == "memory":
        from database.store_memory import InMemoryContextStore
        return InMemoryContextStore()
    if backend == "file":
        from database.store_file import FileContextStore
        return FileContextStore(data_dir=config.store_file_dir)
    if backend == "sql":
        from database.store import SqlContextStore
        return SqlContextStore()
    logger.error("store_backend_unknown", backend=backend, supported=STORE_BACKENDS)
    raise ValueError(f"Unknown store_backend {backend!r}; expected one of {', '.join(STORE_BACKENDS)}")


def create_store(config: Optional[DatabaseConfig] = None) -> BaseContextStore:
    """Return the singleton store, building it from config on first call."""
    global _instance
    if _instance is None:
        config = config or DatabaseConfig()
        _instance = _build(config)
        logger.info("store_created", backend=config.store_backend)
    return _instance


def get_store() -> BaseContextStore:
    return create_store()


def reset_store() -> None:
    global _instance
    _instance = None
