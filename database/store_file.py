"""
JSON-on-disk variant of the in-memory store.

Each collection lives in its own file under `data_dir`
(profiles.json, sessions.json, contacts.json, notifications.json) and is
read back when the store starts, so profiles and session history survive
a restart. Only one process may own a data directory at a time.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Iterable, Optional

from database.store_memory import InMemoryAutomationStore
from models.schemas import (
    AutomationProfile, AutomationSession, KnownContact, LogSender,
    Notification, SessionStatus,
)

logger = structlog.get_logger()

_COLLECTIONS = ("profiles", "sessions", "contacts", "notifications")


class FileAutomationStore(InMemoryAutomationStore):
    """
    Writes go through the in-memory implementation and then persist the
    touched collection. With flush_interval_s > 0, writes inside the
    interval are coalesced into one flush.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._pending: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        for name in _COLLECTIONS:
            self._restore(name)
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    def _path(self, name: str) -> Path:
        return self._data_dir / f"{name}.json"

    def _records(self, name: str) -> dict[str, dict]:
        return {
            "profiles": self._profiles,
            "sessions": self._sessions,
            "contacts": self._contacts,
            "notifications": self._notifications,
        }[name]

    def _restore(self, name: str):
        path = self._path(name)
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", collection=name, error=str(e))
            return
        if not isinstance(data, dict):
            logger.warning("file_store_load_error", collection=name, error="not an object")
            return
        self._records(name).update(data)
        logger.debug("file_store_loaded", collection=name, records=len(data))

    def _write(self, name: str):
        path = self._path(name)
        staging = path.with_suffix(".tmp")
        staging.write_text(json.dumps(self._records(name), indent=2, default=str))
        staging.replace(path)

    def _persist(self, *names: str):
        if self._flush_interval <= 0:
            for name in names:
                self._write(name)
            return
        self._pending.update(names)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self):
        await asyncio.sleep(self._flush_interval)
        names, self._pending = self._pending, set()
        for name in names:
            self._write(name)

    def flush_all(self):
        """Write every collection now, pending or not."""
        self._pending.clear()
        for name in _COLLECTIONS:
            self._write(name)
        logger.info("file_store_flushed_all")

    async def save_profile(self, profile: AutomationProfile) -> AutomationProfile:
        result = await super().save_profile(profile)
        self._persist("profiles")
        return result

    async def delete_profile(self, profile_id: str) -> bool:
        deleted = await super().delete_profile(profile_id)
        if deleted:
            self._persist("profiles", "sessions")
        return deleted

    async def create_session(self, session: AutomationSession) -> AutomationSession:
        result = await super().create_session(session)
        self._persist("sessions")
        return result

    async def append_log_entry(
        self, session_id: str, sender: LogSender, message: str,
    ) -> Optional[AutomationSession]:
        result = await super().append_log_entry(session_id, sender, message)
        self._persist("sessions")
        return result

    async def compare_and_swap_status(
        self, session_id: str, expected: Iterable[SessionStatus],
        new_status: SessionStatus, **changes: Any,
    ) -> tuple[Optional[AutomationSession], bool]:
        session, swapped = await super().compare_and_swap_status(
            session_id, expected, new_status, **changes,
        )
        if swapped:
            self._persist("sessions")
        return session, swapped

    async def upsert_contact(self, contact: KnownContact) -> KnownContact:
        result = await super().upsert_contact(contact)
        self._persist("contacts")
        return result

    async def save_notification(self, notification: Notification) -> Notification:
        result = await super().save_notification(notification)
        self._persist("notifications")
        return result
