"""
FileContextStore — InMemoryContextStore mirrored to JSON files.

    {data_dir}/actors.json     {"<external_id>": <internal_id>}
    {data_dir}/contexts.json   {"<external_id>": "<context blob>"}

Each write rewrites the touched file through a temp file + rename, so a
crash leaves either the old or the new file. With flush_interval_s > 0,
writes inside the interval are coalesced into one rewrite per file.
One process per data_dir; there is no cross-process locking.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Callable, Optional

from database.store_memory import InMemoryContextStore

logger = structlog.get_logger()


class FileContextStore(InMemoryContextStore):
    """Memory store that persists actors and context blobs under data_dir."""

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._pending: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None

        # name → (in-memory table, value decoder)
        self._tables: dict[str, tuple[Callable[[], dict[int, Any]], Callable[[Any], Any]]] = {
            "actors": (lambda: self._actors, int),
            "contexts": (lambda: self._contexts, str),
        }
        for name in self._tables:
            self._restore(name)
        logger.info("file_store_initialized", data_dir=str(self._data_dir), **self.stats())

    def _path(self, name: str) -> Path:
        return self._data_dir / f"{name}.json"

    def _restore(self, name: str) -> None:
        path = self._path(name)
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text())
            if not isinstance(raw, dict):
                raise ValueError(f"{path.name} holds {type(raw).__name__}, expected object")
            table, decode = self._tables[name]
            table().update({int(k): decode(v) for k, v in raw.items()})
        except (OSError, ValueError, TypeError) as e:
            logger.warning("file_store_load_error", collection=name, error=str(e))

    def _write(self, name: str) -> None:
        table, _ = self._tables[name]
        path = self._path(name)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps({str(k): v for k, v in table().items()}, indent=2))
        tmp.replace(path)

    def _changed(self, name: str) -> None:
        if self._flush_interval <= 0:
            self._write(name)
            return
        self._pending.add(name)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self._flush_interval)
        pending, self._pending = self._pending, set()
        for name in pending:
            self._write(name)

    def flush_all(self) -> None:
        """Write every collection now, pending or not."""
        self._pending.clear()
        for name in self._tables:
            self._write(name)
        logger.info("file_store_flushed_all", data_dir=str(self._data_dir))

    # ── Writes ────────────────────────────────────────────

    def register_actor(self, external_id: int, internal_id: int) -> None:
        super().register_actor(external_id, internal_id)
        self._changed("actors")

    async def save_context_blob(self, external_id: int, blob: str) -> None:
        await super().save_context_blob(external_id, blob)
        self._changed("contexts")
