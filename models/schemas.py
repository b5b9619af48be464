"""
Core data models for the Contact Autopilot system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class BotType(str, Enum):
    MENU = "menu"
    FREE_TEXT = "free_text"
    MIXED = "mixed"


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    CPF = "cpf"               # Brazilian national ID
    PHONE = "phone"
    DATE = "date"


class SessionStatus(str, Enum):
    PENDING = "pending"
    NAVIGATING = "navigating"
    WAITING_RESPONSE = "waiting_response"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({
    SessionStatus.PENDING, SessionStatus.NAVIGATING, SessionStatus.WAITING_RESPONSE,
})
TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


class LogSender(str, Enum):
    RESPONDER = "responder"
    US = "us"


class DecisionAction(str, Enum):
    RESPOND = "respond"
    COMPLETE = "complete"
    FAIL = "fail"
    WAIT = "wait"


class FailureCategory(str, Enum):
    ERROR = "error"
    DECISION = "decision"
    DISPATCH = "dispatch"
    BUDGET = "budget"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    EXIT_OPTION = "exit_option"


# ──────────────────────────────────────────────────────────────
#  Profile — a reusable automation target
# ──────────────────────────────────────────────────────────────

class AutomationField(BaseModel):
    """A fact the engine may disclose when the responder asks for it."""
    id: str = Field(default_factory=_new_id)
    name: str                                 # machine name, e.g. "cpf"
    label: str                                # e.g. "CPF"
    value: str
    prompt_patterns: list[str] = []           # how the responder asks for it
    field_type: FieldType = FieldType.TEXT
    priority: int = 0                         # lower wins on ties
    is_required: bool = True


class MenuOption(BaseModel):
    id: str = Field(default_factory=_new_id)
    value: str                                # literal to send, e.g. "2"
    label: str
    description: str = ""
    keywords: list[str] = []
    priority: int = 0
    is_exit: bool = False


class AutomationProfile(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str = "default"
    remote_jid: str                           # responder channel address
    contact_name: str
    contact_nickname: str = ""
    profile_pic_url: str = ""
    description: str = ""
    bot_type: BotType = BotType.MENU
    max_wait_seconds: int = 120
    max_retries: int = 3
    navigation_hints: str = ""
    is_active: bool = True
    fields: list[AutomationField] = []
    menu_options: list[MenuOption] = []
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def sorted_fields(self) -> list[AutomationField]:
        return sorted(self.fields, key=lambda f: f.priority)

    def sorted_menu_options(self) -> list[MenuOption]:
        return sorted(self.menu_options, key=lambda m: m.priority)

    def get_field(self, field_id: str) -> Optional[AutomationField]:
        return next((f for f in self.fields if f.id == field_id), None)

    def get_menu_option(self, option_id: str) -> Optional[MenuOption]:
        return next((m for m in self.menu_options if m.id == option_id), None)

    def exit_option_for(self, value: str) -> Optional[MenuOption]:
        value = (value or "").strip()
        return next((m for m in self.menu_options if m.is_exit and m.value == value), None)


# ──────────────────────────────────────────────────────────────
#  Session — one conversation attempt
# ──────────────────────────────────────────────────────────────

class NavigationLogEntry(BaseModel):
    seq: int = 0
    sender: LogSender
    message: str
    timestamp: datetime = Field(default_factory=_utcnow)


class AutomationSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str = "default"
    profile_id: str
    requested_by: str = ""
    requested_from: str = ""
    original_query: str
    objective: str
    status: SessionStatus = SessionStatus.PENDING
    navigation_log: list[NavigationLogEntry] = []
    messages_sent: int = 0
    messages_received: int = 0
    last_bot_message: str = ""
    last_our_response: str = ""
    last_activity_at: Optional[datetime] = None
    expires_at: datetime
    result: str = ""
    result_summary: str = ""
    success: Optional[bool] = None
    failure_category: Optional[FailureCategory] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def apply_entry(self, sender: LogSender, message: str, at: datetime = None) -> NavigationLogEntry:
        """Append a transcript entry and update counters/status accordingly."""
        at = at or _utcnow()
        entry = NavigationLogEntry(
            seq=len(self.navigation_log), sender=sender, message=message, timestamp=at,
        )
        self.navigation_log.append(entry)
        self.last_activity_at = at
        if sender == LogSender.RESPONDER:
            self.last_bot_message = message
            self.messages_received += 1
            self.status = SessionStatus.WAITING_RESPONSE
        else:
            self.last_our_response = message
            self.messages_sent += 1
            self.status = SessionStatus.NAVIGATING
        return entry

    def transcript_tail(self, n: int = 10) -> list[NavigationLogEntry]:
        return self.navigation_log[-n:] if n > 0 else []


# ──────────────────────────────────────────────────────────────
#  Decision Function contract
# ──────────────────────────────────────────────────────────────

class NavigationDecision(BaseModel):
    action: DecisionAction = DecisionAction.WAIT
    response: str = ""
    reason: str = ""
    extracted_result: str = ""


class DecisionRequest(BaseModel):
    """Everything the decision function sees for one turn."""
    session_id: str = ""
    objective: str
    contact_name: str = ""
    profile_description: str = ""
    navigation_hints: str = ""
    bot_type: BotType = BotType.MENU
    fields: list[AutomationField] = []
    menu_options: list[MenuOption] = []
    transcript: list[NavigationLogEntry] = []
    latest_message: str = ""
    messages_sent: int = 0
    messages_received: int = 0


class IntentDetection(BaseModel):
    is_automation: bool = False
    profile_id: Optional[str] = None
    objective: str = ""
    reasoning: str = ""


# ──────────────────────────────────────────────────────────────
#  Notifications & contacts
# ──────────────────────────────────────────────────────────────

class Notification(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str = "default"
    type: str = "contact_automation"
    category: str = "success"
    title: str
    message: str
    metadata: dict[str, Any] = {}
    action_url: str = ""
    action_label: str = "View details"
    created_at: datetime = Field(default_factory=_utcnow)


class KnownContact(BaseModel):
    """A contact seen on the messaging channel."""
    tenant_id: str = "default"
    remote_jid: str
    name: str = ""
    profile_pic_url: str = ""
    is_group: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)


class InboundMessage(BaseModel):
    """A text message parsed from a gateway webhook."""
    remote_jid: str
    text: str
    push_name: str = ""
    from_me: bool = False
    is_group: bool = False
    instance: str = ""
    message_id: str = ""
