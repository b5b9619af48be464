"""
SqlAutomationStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

The single-active-session invariant is enforced by the unique index on
automation_sessions.active_key: inserting a second non-terminal session for
a profile fails with IntegrityError, which surfaces as
SessionAlreadyActiveError. Status transitions are compare-and-swap UPDATEs
guarded by the expected status set.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from core.errors import DuplicateProfileError, SessionAlreadyActiveError
from database.models import (
    FieldRow, KnownContactRow, LogEntryRow, MenuOptionRow, NotificationRow,
    ProfileRow, SessionRow,
)
from database.session import DbSessionScope, get_db_session
from database.store_base import BaseAutomationStore
from models.schemas import (
    ACTIVE_STATUSES, TERMINAL_STATUSES, AutomationField, AutomationProfile,
    AutomationSession, KnownContact, LogSender, MenuOption,
    NavigationLogEntry, Notification, SessionStatus,
)

logger = structlog.get_logger()


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _column_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class SqlAutomationStore(BaseAutomationStore):
    """
    Persistent automation store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_scope: DbSessionScope = None):
        self._scope = session_scope or get_db_session

    # ── Profiles ───────────────────────────────────────────

    async def list_profiles(self, tenant_id: str, active_only: bool = False) -> list[AutomationProfile]:
        async with self._scope() as db:
            stmt = select(ProfileRow).where(ProfileRow.tenant_id == tenant_id)
            if active_only:
                stmt = stmt.where(ProfileRow.is_active.is_(True))
            result = await db.execute(stmt.order_by(ProfileRow.contact_name))
            return [self._row_to_profile(r) for r in result.scalars()]

    async def get_profile(self, profile_id: str) -> Optional[AutomationProfile]:
        async with self._scope() as db:
            row = await db.get(ProfileRow, profile_id)
            return self._row_to_profile(row) if row else None

    async def find_profile_by_remote_jid(self, tenant_id: str, remote_jid: str) -> Optional[AutomationProfile]:
        async with self._scope() as db:
            stmt = select(ProfileRow).where(
                ProfileRow.tenant_id == tenant_id, ProfileRow.remote_jid == remote_jid,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_profile(row) if row else None

    async def save_profile(self, profile: AutomationProfile) -> AutomationProfile:
        profile.updated_at = datetime.now(timezone.utc)
        try:
            async with self._scope() as db:
                row = await db.get(ProfileRow, profile.id)
                if row is None:
                    row = ProfileRow(id=profile.id, created_at=profile.created_at)
                    db.add(row)
                row.tenant_id = profile.tenant_id
                row.remote_jid = profile.remote_jid
                row.contact_name = profile.contact_name
                row.contact_nickname = profile.contact_nickname
                row.profile_pic_url = profile.profile_pic_url
                row.description = profile.description
                row.bot_type = profile.bot_type.value
                row.max_wait_seconds = profile.max_wait_seconds
                row.max_retries = profile.max_retries
                row.navigation_hints = profile.navigation_hints
                row.is_active = profile.is_active
                row.updated_at = profile.updated_at
                row.fields = self._merge_children(
                    row.fields, profile.fields, FieldRow, self._field_columns, "name",
                )
                row.menu_options = self._merge_children(
                    row.menu_options, profile.menu_options, MenuOptionRow, self._option_columns, "value",
                )
        except IntegrityError as e:
            logger.warning("profile_save_conflict", profile_id=profile.id, error=str(e.orig))
            raise DuplicateProfileError() from e
        return profile

    @staticmethod
    def _merge_children(existing_rows, items, row_cls, columns, natural_key) -> list:
        """
        Update child rows in place, matched by id and then by natural key, so
        replacing a child never inserts a row that collides with its orphan.
        """
        by_id = {r.id: r for r in existing_rows}
        by_key = {getattr(r, natural_key): r for r in existing_rows}
        merged = []
        for item in items:
            row = by_id.get(item.id) or by_key.get(getattr(item, natural_key))
            if row is None or row in merged:
                row = row_cls(id=item.id)
            item.id = row.id
            for name, value in columns(item).items():
                setattr(row, name, value)
            merged.append(row)
        return merged

    @staticmethod
    def _field_columns(f: AutomationField) -> dict[str, Any]:
        return {
            "name": f.name, "label": f.label, "value": f.value,
            "prompt_patterns": list(f.prompt_patterns),
            "field_type": f.field_type.value, "priority": f.priority,
            "is_required": f.is_required,
        }

    @staticmethod
    def _option_columns(m: MenuOption) -> dict[str, Any]:
        return {
            "value": m.value, "label": m.label, "description": m.description,
            "keywords": list(m.keywords), "priority": m.priority, "is_exit": m.is_exit,
        }

    async def delete_profile(self, profile_id: str) -> bool:
        async with self._scope() as db:
            row = await db.get(ProfileRow, profile_id)
            if row is None:
                return False
            session_ids = select(SessionRow.id).where(SessionRow.profile_id == profile_id)
            await db.execute(delete(LogEntryRow).where(LogEntryRow.session_id.in_(session_ids)))
            await db.execute(delete(SessionRow).where(SessionRow.profile_id == profile_id))
            await db.delete(row)
        logger.info("profile_deleted", profile_id=profile_id)
        return True

    # ── Sessions ───────────────────────────────────────────

    async def create_session(self, session: AutomationSession) -> AutomationSession:
        try:
            async with self._scope() as db:
                db.add(SessionRow(
                    id=session.id,
                    tenant_id=session.tenant_id,
                    profile_id=session.profile_id,
                    active_key=None if session.is_terminal else session.profile_id,
                    requested_by=session.requested_by,
                    requested_from=session.requested_from,
                    original_query=session.original_query,
                    objective=session.objective,
                    status=session.status.value,
                    expires_at=session.expires_at,
                    created_at=session.created_at,
                ))
        except IntegrityError as e:
            logger.info("session_insert_rejected", profile_id=session.profile_id, error=str(e.orig))
            raise SessionAlreadyActiveError() from e
        return session

    async def get_session(self, session_id: str) -> Optional[AutomationSession]:
        async with self._scope() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def find_active_session(self, profile_id: str) -> Optional[AutomationSession]:
        async with self._scope() as db:
            stmt = select(SessionRow).where(SessionRow.active_key == profile_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def list_sessions(
        self, tenant_id: str, status: Optional[SessionStatus] = None,
        profile_id: Optional[str] = None, limit: int = 50,
    ) -> list[AutomationSession]:
        async with self._scope() as db:
            stmt = select(SessionRow).where(SessionRow.tenant_id == tenant_id)
            if status is not None:
                stmt = stmt.where(SessionRow.status == SessionStatus(status).value)
            if profile_id is not None:
                stmt = stmt.where(SessionRow.profile_id == profile_id)
            stmt = stmt.order_by(SessionRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars()]

    async def append_log_entry(
        self, session_id: str, sender: LogSender, message: str,
    ) -> Optional[AutomationSession]:
        async with self._scope() as db:
            row = await db.get(SessionRow, session_id, with_for_update=True)
            if row is None:
                return None
            session = self._row_to_session(row)
            if session.is_terminal:
                return session

            entry = session.apply_entry(sender, message)
            row.entries.append(LogEntryRow(
                seq=entry.seq, sender=entry.sender.value,
                message=entry.message, timestamp=entry.timestamp,
            ))
            row.status = session.status.value
            row.messages_sent = session.messages_sent
            row.messages_received = session.messages_received
            row.last_bot_message = session.last_bot_message
            row.last_our_response = session.last_our_response
            row.last_activity_at = session.last_activity_at
            return session

    async def compare_and_swap_status(
        self, session_id: str, expected: Iterable[SessionStatus],
        new_status: SessionStatus, **changes: Any,
    ) -> tuple[Optional[AutomationSession], bool]:
        expected_values = [SessionStatus(s).value for s in expected]
        values = {k: _column_value(v) for k, v in changes.items()}
        values["status"] = new_status.value
        if new_status in TERMINAL_STATUSES:
            values["active_key"] = None

        async with self._scope() as db:
            result = await db.execute(
                update(SessionRow)
                .where(SessionRow.id == session_id, SessionRow.status.in_(expected_values))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            swapped = result.rowcount == 1

        return await self.get_session(session_id), swapped

    async def list_expired_sessions(self, now: datetime) -> list[AutomationSession]:
        async with self._scope() as db:
            stmt = select(SessionRow).where(
                SessionRow.status.in_([s.value for s in ACTIVE_STATUSES]),
                SessionRow.expires_at < now,
            )
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars()]

    # ── Known contacts ─────────────────────────────────────

    async def upsert_contact(self, contact: KnownContact) -> KnownContact:
        async with self._scope() as db:
            row = await db.get(KnownContactRow, (contact.tenant_id, contact.remote_jid))
            if row is None:
                row = KnownContactRow(tenant_id=contact.tenant_id, remote_jid=contact.remote_jid)
                db.add(row)
            row.name = contact.name or row.name or ""
            row.profile_pic_url = contact.profile_pic_url or row.profile_pic_url or ""
            row.is_group = contact.is_group
            contact.name = row.name
            contact.profile_pic_url = row.profile_pic_url
        return contact

    async def list_contacts(self, tenant_id: str) -> list[KnownContact]:
        async with self._scope() as db:
            stmt = select(KnownContactRow).where(KnownContactRow.tenant_id == tenant_id)
            result = await db.execute(stmt)
            return [
                KnownContact(
                    tenant_id=r.tenant_id, remote_jid=r.remote_jid, name=r.name or "",
                    profile_pic_url=r.profile_pic_url or "", is_group=bool(r.is_group),
                    updated_at=_aware(r.updated_at),
                )
                for r in result.scalars()
            ]

    # ── Notifications ──────────────────────────────────────

    async def save_notification(self, notification: Notification) -> Notification:
        async with self._scope() as db:
            db.add(NotificationRow(
                id=notification.id, tenant_id=notification.tenant_id,
                type=notification.type, category=notification.category,
                title=notification.title, message=notification.message,
                metadata_=notification.metadata, action_url=notification.action_url,
                action_label=notification.action_label, created_at=notification.created_at,
            ))
        return notification

    async def list_notifications(self, tenant_id: str, limit: int = 50) -> list[Notification]:
        async with self._scope() as db:
            stmt = (
                select(NotificationRow)
                .where(NotificationRow.tenant_id == tenant_id)
                .order_by(NotificationRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [
                Notification(
                    id=r.id, tenant_id=r.tenant_id, type=r.type, category=r.category,
                    title=r.title, message=r.message, metadata=r.metadata_ or {},
                    action_url=r.action_url, action_label=r.action_label,
                    created_at=_aware(r.created_at),
                )
                for r in result.scalars()
            ]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_profile(row: ProfileRow) -> AutomationProfile:
        return AutomationProfile(
            id=row.id, tenant_id=row.tenant_id, remote_jid=row.remote_jid,
            contact_name=row.contact_name, contact_nickname=row.contact_nickname or "",
            profile_pic_url=row.profile_pic_url or "", description=row.description or "",
            bot_type=row.bot_type, max_wait_seconds=row.max_wait_seconds,
            max_retries=row.max_retries, navigation_hints=row.navigation_hints or "",
            is_active=bool(row.is_active),
            fields=[
                AutomationField(
                    id=f.id, name=f.name, label=f.label, value=f.value or "",
                    prompt_patterns=f.prompt_patterns or [], field_type=f.field_type,
                    priority=f.priority, is_required=bool(f.is_required),
                )
                for f in row.fields
            ],
            menu_options=[
                MenuOption(
                    id=m.id, value=m.value, label=m.label, description=m.description or "",
                    keywords=m.keywords or [], priority=m.priority, is_exit=bool(m.is_exit),
                )
                for m in row.menu_options
            ],
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_session(row: SessionRow) -> AutomationSession:
        return AutomationSession(
            id=row.id, tenant_id=row.tenant_id, profile_id=row.profile_id,
            requested_by=row.requested_by or "", requested_from=row.requested_from or "",
            original_query=row.original_query or "", objective=row.objective or "",
            status=row.status,
            navigation_log=[
                NavigationLogEntry(
                    seq=e.seq, sender=e.sender, message=e.message or "",
                    timestamp=_aware(e.timestamp),
                )
                for e in row.entries
            ],
            messages_sent=row.messages_sent, messages_received=row.messages_received,
            last_bot_message=row.last_bot_message or "",
            last_our_response=row.last_our_response or "",
            last_activity_at=_aware(row.last_activity_at),
            expires_at=_aware(row.expires_at),
            result=row.result or "", result_summary=row.result_summary or "",
            success=row.success, failure_category=row.failure_category,
            created_at=_aware(row.created_at), completed_at=_aware(row.completed_at),
        )
