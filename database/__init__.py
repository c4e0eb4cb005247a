"""
Database layer — identity resolution and context blob persistence.

Backends (chosen by settings.database.store_backend):
  - memory  InMemoryContextStore, dicts, lost on restart
  - file    FileContextStore, JSON files under store_file_dir
  - sql     SqlContextStore, humans table via SQLAlchemy async

    from database import create_store
    store = create_store(settings.database)
    internal_id = await store.resolve_internal_id(telegram_user_id)
"""
from database.models import Base, HumanRow
from database.session import close_db, get_engine, get_session, init_db
from database.store_base import BaseContextStore
from database.store_memory import InMemoryContextStore
from database.store_file import FileContextStore
from database.store import SqlContextStore
from database.store_factory import STORE_BACKENDS, create_store, get_store, reset_store

__all__ = [
    "Base", "HumanRow",
    "get_engine", "get_session", "init_db", "close_db",
    "BaseContextStore", "InMemoryContextStore", "FileContextStore", "SqlContextStore",
    "STORE_BACKENDS", "create_store", "get_store", "reset_store",
]
