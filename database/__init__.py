"""
Database layer — Session persistence and SQL-backed flow definitions.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  session = await store.get(contact_id="584121234567", connection_id="1")
"""
from database.models import (
    Base, FlowRow, NodeRow, OptionRow, NodeActionRow, ChatSessionRow,
)
from database.session import Database, to_async_url
from database.store_base import SessionStore
from database.store import SqlSessionStore, SqlFlowRepository
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "FlowRow", "NodeRow", "OptionRow", "NodeActionRow", "ChatSessionRow",
    # Engine management
    "Database", "to_async_url",
    # Store interface
    "SessionStore",
    # Backends
    "SqlSessionStore", "SqlFlowRepository",
    "InMemorySessionStore", "FileSessionStore",
    # Factory
    "create_store",
]
