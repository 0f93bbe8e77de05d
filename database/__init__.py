"""
Database layer — Call sessions, event log, input audit, notification queue.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  call = await store.get_call("CA123")
"""
from database.models import (
    Base, CallRow, CallEventRow, InputStageRow,
    NotificationRow, NotificationMetricRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseCallStore, StorageError
from database.store import SqlCallStore
from database.store_memory import InMemoryCallStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "CallRow", "CallEventRow", "InputStageRow",
    "NotificationRow", "NotificationMetricRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseCallStore", "StorageError",
    # Store backends
    "SqlCallStore", "InMemoryCallStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
