"""Tests for the core data models."""
from datetime import datetime, timedelta, timezone

from models.schemas import (
    ACTIVE_STATUSES, TERMINAL_STATUSES, AutomationSession, LogSender,
    NavigationDecision, DecisionAction, SessionStatus,
)
from conftest import make_profile


def _session(**overrides) -> AutomationSession:
    data = dict(
        profile_id="p1",
        original_query="tem falta de água?",
        objective="tem falta de água?",
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=20),
    )
    data.update(overrides)
    return AutomationSession(**data)


class TestSessionStatus:
    def test_status_sets_partition_all_statuses(self):
        assert ACTIVE_STATUSES | TERMINAL_STATUSES == set(SessionStatus)
        assert not ACTIVE_STATUSES & TERMINAL_STATUSES

    def test_new_session_is_pending(self):
        s = _session()
        assert s.status == SessionStatus.PENDING
        assert not s.is_terminal
        assert s.messages_sent == 0
        assert s.success is None

    def test_terminal(self):
        assert _session(status=SessionStatus.COMPLETED).is_terminal
        assert _session(status=SessionStatus.FAILED).is_terminal


class TestApplyEntry:
    def test_our_message_counts_as_sent(self):
        s = _session()
        entry = s.apply_entry(LogSender.US, "Olá")
        assert entry.seq == 0
        assert s.messages_sent == 1
        assert s.messages_received == 0
        assert s.last_our_response == "Olá"
        assert s.status == SessionStatus.NAVIGATING
        assert s.last_activity_at == entry.timestamp

    def test_responder_message_counts_as_received(self):
        s = _session(status=SessionStatus.NAVIGATING)
        s.apply_entry(LogSender.RESPONDER, "1 - Fatura\n2 - Falta de água")
        assert s.messages_received == 1
        assert s.last_bot_message.startswith("1 - Fatura")
        assert s.status == SessionStatus.WAITING_RESPONSE

    def test_sequence_numbers_follow_append_order(self):
        s = _session()
        for i, sender in enumerate([LogSender.US, LogSender.RESPONDER, LogSender.US]):
            s.apply_entry(sender, f"m{i}")
        assert [e.seq for e in s.navigation_log] == [0, 1, 2]
        assert [e.message for e in s.navigation_log] == ["m0", "m1", "m2"]

    def test_transcript_tail(self):
        s = _session()
        for i in range(15):
            s.apply_entry(LogSender.US, f"m{i}")
        tail = s.transcript_tail(10)
        assert len(tail) == 10
        assert tail[0].message == "m5"
        assert s.transcript_tail(0) == []


class TestProfileHelpers:
    def test_sorted_children_follow_priority(self):
        p = make_profile()
        p.menu_options[0].priority = 5
        assert [m.value for m in p.sorted_menu_options()] == ["2", "9", "1"]
        assert [f.name for f in p.sorted_fields()] == ["cpf"]

    def test_exit_option_lookup(self):
        p = make_profile()
        assert p.exit_option_for("9").label == "Encerrar atendimento"
        assert p.exit_option_for(" 9 ") is not None
        assert p.exit_option_for("2") is None
        assert p.exit_option_for("") is None

    def test_child_lookup_by_id(self):
        p = make_profile()
        field = p.fields[0]
        assert p.get_field(field.id) is field
        assert p.get_field("missing") is None
        assert p.get_menu_option(p.menu_options[1].id).value == "2"


class TestNavigationDecision:
    def test_defaults_to_wait(self):
        d = NavigationDecision()
        assert d.action == DecisionAction.WAIT
        assert d.response == ""
