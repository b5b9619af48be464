"""
InMemoryAutomationStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlAutomationStore
  - Check-and-create serialized by a per-profile asyncio lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from core.errors import SessionAlreadyActiveError
from database.store_base import BaseAutomationStore
from models.schemas import (
    ACTIVE_STATUSES, AutomationProfile, AutomationSession, KnownContact,
    LogSender, Notification, SessionStatus,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _contact_key(tenant_id: str, remote_jid: str) -> str:
    return f"{tenant_id}:{remote_jid}"


class InMemoryAutomationStore(BaseAutomationStore):
    """
    Full-featured in-memory store with the same interface as SqlAutomationStore.
    Records are kept as JSON-ready dicts and rebuilt into models on read, so
    callers never share mutable state with the store.
    """

    def __init__(self):
        self._profiles: dict[str, dict] = {}         # id → profile dict
        self._sessions: dict[str, dict] = {}         # id → session dict
        self._contacts: dict[str, dict] = {}         # "tenant:jid" → contact dict
        self._notifications: dict[str, dict] = {}    # id → notification dict

        self._profile_locks = KeyedLock()
        self._session_locks = KeyedLock()
        logger.info("inmemory_store_initialized")

    # ── Profiles ──────────────────────────────────────────

    async def list_profiles(self, tenant_id: str, active_only: bool = False) -> list[AutomationProfile]:
        profiles = [
            AutomationProfile.model_validate(p) for p in self._profiles.values()
            if p["tenant_id"] == tenant_id and (p["is_active"] or not active_only)
        ]
        profiles.sort(key=lambda p: p.contact_name.lower())
        return profiles

    async def get_profile(self, profile_id: str) -> Optional[AutomationProfile]:
        data = self._profiles.get(profile_id)
        return AutomationProfile.model_validate(data) if data else None

    async def find_profile_by_remote_jid(self, tenant_id: str, remote_jid: str) -> Optional[AutomationProfile]:
        for p in self._profiles.values():
            if p["tenant_id"] == tenant_id and p["remote_jid"] == remote_jid:
                return AutomationProfile.model_validate(p)
        return None

    async def save_profile(self, profile: AutomationProfile) -> AutomationProfile:
        profile.updated_at = _utcnow()
        self._profiles[profile.id] = profile.model_dump(mode="json")
        return profile

    async def delete_profile(self, profile_id: str) -> bool:
        if self._profiles.pop(profile_id, None) is None:
            return False
        doomed = [sid for sid, s in self._sessions.items() if s["profile_id"] == profile_id]
        for sid in doomed:
            del self._sessions[sid]
        logger.info("profile_deleted", profile_id=profile_id, sessions_removed=len(doomed))
        return True

    # ── Sessions ──────────────────────────────────────────

    async def create_session(self, session: AutomationSession) -> AutomationSession:
        async with self._profile_locks.hold(session.profile_id):
            if self._find_active(session.profile_id):
                raise SessionAlreadyActiveError()
            self._sessions[session.id] = session.model_dump(mode="json")
        return session

    async def get_session(self, session_id: str) -> Optional[AutomationSession]:
        data = self._sessions.get(session_id)
        return AutomationSession.model_validate(data) if data else None

    async def find_active_session(self, profile_id: str) -> Optional[AutomationSession]:
        data = self._find_active(profile_id)
        return AutomationSession.model_validate(data) if data else None

    def _find_active(self, profile_id: str) -> Optional[dict]:
        active_values = {s.value for s in ACTIVE_STATUSES}
        for s in self._sessions.values():
            if s["profile_id"] == profile_id and s["status"] in active_values:
                return s
        return None

    async def list_sessions(
        self, tenant_id: str, status: Optional[SessionStatus] = None,
        profile_id: Optional[str] = None, limit: int = 50,
    ) -> list[AutomationSession]:
        sessions = [
            AutomationSession.model_validate(s) for s in self._sessions.values()
            if s["tenant_id"] == tenant_id
            and (status is None or s["status"] == SessionStatus(status).value)
            and (profile_id is None or s["profile_id"] == profile_id)
        ]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]

    async def append_log_entry(
        self, session_id: str, sender: LogSender, message: str,
    ) -> Optional[AutomationSession]:
        async with self._session_locks.hold(session_id):
            session = await self.get_session(session_id)
            if session is None or session.is_terminal:
                return session
            session.apply_entry(sender, message)
            self._sessions[session_id] = session.model_dump(mode="json")
            return session

    async def compare_and_swap_status(
        self, session_id: str, expected: Iterable[SessionStatus],
        new_status: SessionStatus, **changes: Any,
    ) -> tuple[Optional[AutomationSession], bool]:
        expected = {SessionStatus(s) for s in expected}
        async with self._session_locks.hold(session_id):
            session = await self.get_session(session_id)
            if session is None or session.status not in expected:
                return session, False
            updated = session.model_copy(update={"status": new_status, **changes})
            self._sessions[session_id] = updated.model_dump(mode="json")
            return updated, True

    async def list_expired_sessions(self, now: datetime) -> list[AutomationSession]:
        active_values = {s.value for s in ACTIVE_STATUSES}
        expired = []
        for s in self._sessions.values():
            if s["status"] not in active_values:
                continue
            session = AutomationSession.model_validate(s)
            if session.expires_at < now:
                expired.append(session)
        return expired

    # ── Known contacts ────────────────────────────────────

    async def upsert_contact(self, contact: KnownContact) -> KnownContact:
        key = _contact_key(contact.tenant_id, contact.remote_jid)
        existing = self._contacts.get(key)
        if existing:
            # Keep a known name/picture when the new sighting carries none
            contact.name = contact.name or existing.get("name", "")
            contact.profile_pic_url = contact.profile_pic_url or existing.get("profile_pic_url", "")
        contact.updated_at = _utcnow()
        self._contacts[key] = contact.model_dump(mode="json")
        return contact

    async def list_contacts(self, tenant_id: str) -> list[KnownContact]:
        return [
            KnownContact.model_validate(c) for c in self._contacts.values()
            if c["tenant_id"] == tenant_id
        ]

    # ── Notifications ─────────────────────────────────────

    async def save_notification(self, notification: Notification) -> Notification:
        self._notifications[notification.id] = notification.model_dump(mode="json")
        return notification

    async def list_notifications(self, tenant_id: str, limit: int = 50) -> list[Notification]:
        items = [
            Notification.model_validate(n) for n in self._notifications.values()
            if n["tenant_id"] == tenant_id
        ]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[:limit]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "profiles": len(self._profiles),
            "sessions": len(self._sessions),
            "contacts": len(self._contacts),
            "notifications": len(self._notifications),
        }
