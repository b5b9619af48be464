"""
Database layer — Multi-backend persistence for profiles and sessions.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  profile = await store.get_profile("p1")
"""
from database.models import (
    Base, ProfileRow, FieldRow, MenuOptionRow, SessionRow, LogEntryRow,
    KnownContactRow, NotificationRow,
)
from database.session import get_engine, get_db_session, init_db, close_db
from database.store_base import BaseAutomationStore
from database.store import SqlAutomationStore
from database.store_memory import InMemoryAutomationStore
from database.store_file import FileAutomationStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ProfileRow", "FieldRow", "MenuOptionRow", "SessionRow",
    "LogEntryRow", "KnownContactRow", "NotificationRow",
    # Session management
    "get_engine", "get_db_session", "init_db", "close_db",
    # Store interface
    "BaseAutomationStore",
    # Store backends
    "SqlAutomationStore", "InMemoryAutomationStore", "FileAutomationStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
