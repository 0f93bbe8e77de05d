"""
Call store selection.

settings.yaml → database.store_backend picks the implementation:

    sql     SqlCallStore on database.url (aiosqlite / asyncpg / aiomysql)
    memory  InMemoryCallStore, lost on restart

Anything else logs a warning and falls back to memory. The first store built
is reused process-wide until reset_store().
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseCallStore

logger = structlog.get_logger()

_current: Optional[BaseCallStore] = None


def _sql_store(config: dict) -> BaseCallStore:
    from database.store import SqlCallStore
    return SqlCallStore(url=config.get("url"))


def _memory_store(config: dict) -> BaseCallStore:
    from database.store_memory import InMemoryCallStore
    return InMemoryCallStore()


_BUILDERS: dict[str, Callable[[dict], BaseCallStore]] = {
    "sql": _sql_store,
    "memory": _memory_store,
}


def create_store(config: dict = None) -> BaseCallStore:
    """Build (or return the already built) store for {"store_backend", "url"}."""
    global _current
    if _current is not None:
        return _current

    config = config or {}
    backend = config.get("store_backend") or "memory"
    builder = _BUILDERS.get(backend)
    if builder is None:
        logger.warning("unknown_store_backend", backend=backend, fallback="memory")
        backend, builder = "memory", _memory_store

    _current = builder(config)
    logger.info("store_created", backend=backend)
    return _current


def get_store() -> BaseCallStore:
    return _current if _current is not None else create_store()


def reset_store() -> None:
    global _current
    _current = None
