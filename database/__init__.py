"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store("memory")
  conversation = await store.get_conversation("c1")
"""
from database.models import (
    Base, ContactRow, ConversationRow, MessageRow,
    OutboundItemRow, AgentConfigRow,
)
from database.session import build_engine, get_engine, session_scope, init_db, close_db, create_session_factory
from database.store_base import BaseConversationStore, DuplicateRecordError
from database.store import SqlConversationStore
from database.store_memory import InMemoryConversationStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ContactRow", "ConversationRow", "MessageRow",
    "OutboundItemRow", "AgentConfigRow",
    # Session management
    "build_engine", "get_engine", "session_scope", "init_db", "close_db", "create_session_factory",
    # Store interface
    "BaseConversationStore", "DuplicateRecordError",
    # Store backends
    "SqlConversationStore", "InMemoryConversationStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
