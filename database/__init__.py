"""
Database layer — Multi-backend persistence for flows and sessions.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  session = await store.get_session("user-1", "+15550001")
"""
from database.models import Base, FlowRow, FlowSessionRow
from database.connection import FlowDatabase, async_url
from database.store_base import BaseFlowStore, SessionNotFoundError
from database.store import SqlFlowStore
from database.store_memory import InMemoryFlowStore
from database.store_file import FileFlowStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "FlowRow", "FlowSessionRow",
    # Connection
    "FlowDatabase", "async_url",
    # Store interface
    "BaseFlowStore", "SessionNotFoundError",
    # Store backends
    "SqlFlowStore", "InMemoryFlowStore", "FileFlowStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
