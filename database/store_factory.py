"""
Process-wide automation store, selected by `database.store_backend`:

    sql     profiles and sessions share the database at `database.url`
    file    JSON snapshots under `database.store_file_dir`
    memory  plain dicts, lost on restart (default)

The first call to create_store() wins; later calls return that instance
until reset_store() clears it.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseAutomationStore

logger = structlog.get_logger()

_instance: Optional[BaseAutomationStore] = None


def _build(backend: str, config: dict) -> BaseAutomationStore:
    if backend == "sql":
        from database.store import SqlAutomationStore
        return SqlAutomationStore()
    if backend == "file":
        from database.store_file import FileAutomationStore
        return FileAutomationStore(data_dir=config.get("store_file_dir", "./data"))
    if backend != "memory":
        logger.warning("unknown_store_backend", backend=backend, fallback="memory")
    from database.store_memory import InMemoryAutomationStore
    return InMemoryAutomationStore()


def create_store(config: dict = None) -> BaseAutomationStore:
    global _instance
    if _instance is None:
        config = config or {}
        backend = config.get("store_backend", "memory")
        _instance = _build(backend, config)
        logger.info("store_created", backend=backend,
                    store=type(_instance).__name__)
    return _instance


def get_store() -> BaseAutomationStore:
    """The active store; an in-memory one is created on first use."""
    return create_store()


def reset_store() -> None:
    global _instance
    _instance = None
