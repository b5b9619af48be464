"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex) — no database-specific sequences.
  - automation_sessions.active_key holds the profile id while a session is
    non-terminal and NULL afterwards. Its unique index is what makes
    "one active session per profile" hold across processes; NULLs never
    collide on any of the supported dialects.
  - Transcript entries live in their own table with a unique
    (session_id, seq) so a lost or duplicated append fails loudly.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Profiles
# ──────────────────────────────────────────────────────────────

class ProfileRow(Base):
    __tablename__ = "automation_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), default="default")
    remote_jid: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_nickname: Mapped[str] = mapped_column(String(256), default="")
    profile_pic_url: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    bot_type: Mapped[str] = mapped_column(String(16), default="menu")
    max_wait_seconds: Mapped[int] = mapped_column(Integer, default=120)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    navigation_hints: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    fields: Mapped[list["FieldRow"]] = relationship(
        back_populates="profile", lazy="selectin",
        cascade="all, delete-orphan", order_by="FieldRow.priority",
    )
    menu_options: Mapped[list["MenuOptionRow"]] = relationship(
        back_populates="profile", lazy="selectin",
        cascade="all, delete-orphan", order_by="MenuOptionRow.priority",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "remote_jid", name="uq_profiles_tenant_jid"),
    )


class FieldRow(Base):
    __tablename__ = "automation_fields"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("automation_profiles.id", ondelete="CASCADE"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    label: Mapped[str] = mapped_column(String(256), nullable=False)
    value: Mapped[str] = mapped_column(Text, default="")
    prompt_patterns: Mapped[Any] = mapped_column(JSON, default=list)
    field_type: Mapped[str] = mapped_column(String(16), default="text")
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)

    profile: Mapped["ProfileRow"] = relationship(back_populates="fields")

    __table_args__ = (
        UniqueConstraint("profile_id", "name", name="uq_fields_profile_name"),
    )


class MenuOptionRow(Base):
    __tablename__ = "automation_menu_options"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("automation_profiles.id", ondelete="CASCADE"), nullable=False,
    )
    value: Mapped[str] = mapped_column(String(64), nullable=False)
    label: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    keywords: Mapped[Any] = mapped_column(JSON, default=list)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_exit: Mapped[bool] = mapped_column(Boolean, default=False)

    profile: Mapped["ProfileRow"] = relationship(back_populates="menu_options")

    __table_args__ = (
        UniqueConstraint("profile_id", "value", name="uq_menu_options_profile_value"),
    )


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "automation_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), default="default")
    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("automation_profiles.id", ondelete="CASCADE"), nullable=False,
    )
    active_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)

    requested_by: Mapped[str] = mapped_column(String(128), default="")
    requested_from: Mapped[str] = mapped_column(String(128), default="")
    original_query: Mapped[str] = mapped_column(Text, default="")
    objective: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(32), default="pending")

    messages_sent: Mapped[int] = mapped_column(Integer, default=0)
    messages_received: Mapped[int] = mapped_column(Integer, default=0)
    last_bot_message: Mapped[str] = mapped_column(Text, default="")
    last_our_response: Mapped[str] = mapped_column(Text, default="")
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    result: Mapped[str] = mapped_column(Text, default="")
    result_summary: Mapped[str] = mapped_column(Text, default="")
    success: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    failure_category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    entries: Mapped[list["LogEntryRow"]] = relationship(
        back_populates="session", lazy="selectin",
        cascade="all, delete-orphan", order_by="LogEntryRow.seq",
    )

    __table_args__ = (
        Index("ix_sessions_profile", "profile_id"),
        Index("ix_sessions_status_expires", "status", "expires_at"),
        Index("ix_sessions_tenant_created", "tenant_id", "created_at"),
    )


class LogEntryRow(Base):
    __tablename__ = "automation_log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("automation_sessions.id", ondelete="CASCADE"), nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    session: Mapped["SessionRow"] = relationship(back_populates="entries")

    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_log_entries_session_seq"),
    )


# ──────────────────────────────────────────────────────────────
#  Known contacts & notifications
# ──────────────────────────────────────────────────────────────

class KnownContactRow(Base):
    __tablename__ = "known_contacts"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    remote_jid: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    profile_pic_url: Mapped[str] = mapped_column(Text, default="")
    is_group: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), default="default")
    type: Mapped[str] = mapped_column(String(64), default="contact_automation")
    category: Mapped[str] = mapped_column(String(32), default="success")
    title: Mapped[str] = mapped_column(String(256), default="")
    message: Mapped[str] = mapped_column(Text, default="")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    action_url: Mapped[str] = mapped_column(String(256), default="")
    action_label: Mapped[str] = mapped_column(String(64), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_notifications_tenant_created", "tenant_id", "created_at"),
    )
