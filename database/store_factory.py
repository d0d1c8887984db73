"""
Process-wide conversation store, chosen by ``database.store_backend``.

    database:
      url: "sqlite:///./inbox_agent.db"    # used by the sql backend
      store_backend: "sql"                 # "sql" | "memory"

The memory backend keeps everything in dicts and forgets it on restart, so it
only suits development and tests. Ingestion dedup and the reconciliation
sweep rely on durable messages in production.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseConversationStore

logger = structlog.get_logger()

_instance: Optional[BaseConversationStore] = None


def _sql() -> BaseConversationStore:
    from database.store import SqlConversationStore
    return SqlConversationStore()


def _memory() -> BaseConversationStore:
    from database.store_memory import InMemoryConversationStore
    return InMemoryConversationStore()


_BACKENDS: dict[str, Callable[[], BaseConversationStore]] = {
    "sql": _sql,
    "memory": _memory,
}


def create_store(backend: str = "memory") -> BaseConversationStore:
    """Build the singleton for ``backend``; later calls return the same instance."""
    global _instance
    if _instance is not None:
        return _instance
    try:
        build = _BACKENDS[backend]
    except KeyError:
        raise ValueError(f"Unknown store backend: {backend!r}") from None
    _instance = build()
    logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseConversationStore:
    """Return the singleton, falling back to a memory store."""
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
