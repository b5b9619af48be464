"""
Abstract Automation Store — the persistence port for all storage backends.

Implementations:
  - SqlAutomationStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryAutomationStore (dict-based, single-process, no persistence)
  - FileAutomationStore     (JSON files on disk, single-process, durable)

Every backend must make create_session atomic with respect to the
"one non-terminal session per profile" invariant, and must treat mutations
on a terminal session as no-ops that return the stored record.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    AutomationProfile, AutomationSession, KnownContact, LogSender,
    Notification, SessionStatus,
)


class BaseAutomationStore(ABC):
    """Interface that all automation store backends must implement."""

    # ── Profiles ──────────────────────────────────────────────

    @abstractmethod
    async def list_profiles(self, tenant_id: str, active_only: bool = False) -> list[AutomationProfile]:
        ...

    @abstractmethod
    async def get_profile(self, profile_id: str) -> Optional[AutomationProfile]:
        ...

    @abstractmethod
    async def find_profile_by_remote_jid(self, tenant_id: str, remote_jid: str) -> Optional[AutomationProfile]:
        ...

    @abstractmethod
    async def save_profile(self, profile: AutomationProfile) -> AutomationProfile:
        """Insert or replace a profile together with its fields and menu options."""
        ...

    @abstractmethod
    async def delete_profile(self, profile_id: str) -> bool:
        """Delete a profile and cascade to its fields, options and sessions."""
        ...

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def create_session(self, session: AutomationSession) -> AutomationSession:
        """
        Atomically insert a session unless the profile already has a
        non-terminal one, in which case SessionAlreadyActiveError is raised.
        """
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[AutomationSession]:
        ...

    @abstractmethod
    async def find_active_session(self, profile_id: str) -> Optional[AutomationSession]:
        ...

    @abstractmethod
    async def list_sessions(
        self, tenant_id: str, status: Optional[SessionStatus] = None,
        profile_id: Optional[str] = None, limit: int = 50,
    ) -> list[AutomationSession]:
        """Newest first."""
        ...

    @abstractmethod
    async def append_log_entry(
        self, session_id: str, sender: LogSender, message: str,
    ) -> Optional[AutomationSession]:
        """
        Append a transcript entry and update counters/status.
        Returns None for unknown sessions and the unchanged record for
        terminal ones.
        """
        ...

    @abstractmethod
    async def compare_and_swap_status(
        self, session_id: str, expected: Iterable[SessionStatus],
        new_status: SessionStatus, **changes: Any,
    ) -> tuple[Optional[AutomationSession], bool]:
        """
        Move a session to new_status (applying changes) only if its current
        status is in expected. Returns (session_after, swapped).
        """
        ...

    @abstractmethod
    async def list_expired_sessions(self, now: datetime) -> list[AutomationSession]:
        ...

    # ── Known contacts ────────────────────────────────────────

    @abstractmethod
    async def upsert_contact(self, contact: KnownContact) -> KnownContact:
        ...

    @abstractmethod
    async def list_contacts(self, tenant_id: str) -> list[KnownContact]:
        ...

    # ── Notifications ─────────────────────────────────────────

    @abstractmethod
    async def save_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def list_notifications(self, tenant_id: str, limit: int = 50) -> list[Notification]:
        ...
