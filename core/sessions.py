"""
Session Manager — lifecycle of automation sessions.

State machine:
    pending → navigating ⇄ waiting_response → completed | failed

Any non-terminal state may finish; nothing leaves a terminal state. Every
status change goes through the store's compare-and-swap, so concurrent
finishers (navigator, sweeper, operator cancel) resolve to exactly one
winner and later calls return the stored record unchanged.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from config.settings import AutomationConfig
from core.errors import (
    ProfileInactiveError, ProfileNotFoundError, SessionAlreadyTerminalError,
    SessionNotFoundError,
)
from database.store_base import BaseAutomationStore
from models.schemas import (
    ACTIVE_STATUSES, AutomationSession, FailureCategory, LogSender, SessionStatus,
)

logger = structlog.get_logger()

CANCELLED_REASON = "Cancelled by operator"
EXPIRED_REASON = "Session expired by timeout"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_objective(query: str) -> str:
    return " ".join((query or "").split())


class SessionManager:
    def __init__(self, store: BaseAutomationStore, config: AutomationConfig = None):
        self.store = store
        self.config = config or AutomationConfig()

    # ── Creation ──────────────────────────────────────────────

    async def create_session(
        self,
        profile_id: str,
        query: str,
        requested_by: str,
        requested_from: str = "",
        objective: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> AutomationSession:
        """
        Start a session for a profile.

        Raises ProfileNotFoundError, ProfileInactiveError, or
        SessionAlreadyActiveError when the profile already has a live session.
        """
        profile = await self.store.get_profile(profile_id)
        if profile is None or (tenant_id is not None and profile.tenant_id != tenant_id):
            raise ProfileNotFoundError()
        if not profile.is_active:
            raise ProfileInactiveError()

        objective = derive_objective(objective or query)
        if not objective:
            raise ValueError("query must not be empty")

        now = _utcnow()
        session = AutomationSession(
            tenant_id=profile.tenant_id,
            profile_id=profile.id,
            requested_by=requested_by,
            requested_from=requested_from,
            original_query=query,
            objective=objective,
            created_at=now,
            expires_at=now + timedelta(
                seconds=profile.max_wait_seconds * self.config.expiry_multiplier,
            ),
        )
        session = await self.store.create_session(session)
        logger.info("session_created", session_id=session.id, profile_id=profile.id,
                    contact=profile.contact_name, expires_at=session.expires_at.isoformat())
        return session

    # ── Transcript ────────────────────────────────────────────

    async def append_responder_message(self, session_id: str, text: str) -> AutomationSession:
        return await self._append(session_id, LogSender.RESPONDER, text)

    async def append_our_message(self, session_id: str, text: str) -> AutomationSession:
        return await self._append(session_id, LogSender.US, text)

    async def _append(self, session_id: str, sender: LogSender, text: str) -> AutomationSession:
        session = await self.store.append_log_entry(session_id, sender, text)
        if session is None:
            raise SessionNotFoundError()
        if session.is_terminal:
            logger.info("append_ignored_terminal", session_id=session_id,
                        sender=sender.value, status=session.status.value)
        return session

    # ── Status transitions ────────────────────────────────────

    async def mark_navigating(self, session_id: str) -> tuple[AutomationSession, bool]:
        """pending → navigating. The flag is False when the session had already left pending."""
        return await self._transition(
            session_id, {SessionStatus.PENDING}, SessionStatus.NAVIGATING,
        )

    async def complete(self, session_id: str, result: str, summary: str = "") -> AutomationSession:
        session, swapped = await self._transition(
            session_id, ACTIVE_STATUSES, SessionStatus.COMPLETED,
            result=result, result_summary=summary, success=True, completed_at=_utcnow(),
        )
        if swapped:
            logger.info("session_completed", session_id=session_id, result=result[:200])
        return session

    async def fail(
        self, session_id: str, reason: str, category: FailureCategory = FailureCategory.ERROR,
    ) -> AutomationSession:
        session, _ = await self._fail(session_id, reason, category)
        return session

    async def expire(self, session_id: str) -> bool:
        """Fail a session for timeout; True only if this call made the transition."""
        _, swapped = await self._fail(session_id, EXPIRED_REASON, FailureCategory.TIMEOUT)
        return swapped

    async def cancel(self, session_id: str, tenant_id: Optional[str] = None) -> AutomationSession:
        session = await self.get_session(session_id, tenant_id)
        if session.is_terminal:
            raise SessionAlreadyTerminalError()
        session, swapped = await self._fail(session_id, CANCELLED_REASON, FailureCategory.CANCELLED)
        if not swapped:
            raise SessionAlreadyTerminalError()
        return session

    async def _fail(
        self, session_id: str, reason: str, category: FailureCategory,
    ) -> tuple[AutomationSession, bool]:
        session, swapped = await self._transition(
            session_id, ACTIVE_STATUSES, SessionStatus.FAILED,
            result=reason, success=False, failure_category=category, completed_at=_utcnow(),
        )
        if swapped:
            logger.warning("session_failed", session_id=session_id, reason=reason,
                           category=category.value)
        return session, swapped

    async def _transition(self, session_id, expected, new_status, **changes):
        session, swapped = await self.store.compare_and_swap_status(
            session_id, expected, new_status, **changes,
        )
        if session is None:
            raise SessionNotFoundError()
        return session, swapped

    # ── Queries ───────────────────────────────────────────────

    async def get_session(self, session_id: str, tenant_id: Optional[str] = None) -> AutomationSession:
        session = await self.store.get_session(session_id)
        if session is None or (tenant_id is not None and session.tenant_id != tenant_id):
            raise SessionNotFoundError()
        return session

    async def list_sessions(
        self, tenant_id: str, status: Optional[SessionStatus] = None,
        profile_id: Optional[str] = None, limit: int = 50,
    ) -> list[AutomationSession]:
        return await self.store.list_sessions(tenant_id, status=status, profile_id=profile_id, limit=limit)

    async def find_active_session_for_contact(
        self, remote_jid: str, tenant_id: str = "default",
    ) -> Optional[AutomationSession]:
        profile = await self.store.find_profile_by_remote_jid(tenant_id, remote_jid)
        if profile is None:
            return None
        return await self.store.find_active_session(profile.id)
