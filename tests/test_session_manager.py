"""
Tests for SessionManager — creation, the one-live-session-per-profile rule,
and terminal-state transitions racing each other.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.errors import (
    ProfileInactiveError, ProfileNotFoundError, SessionAlreadyActiveError,
    SessionAlreadyTerminalError, SessionNotFoundError,
)
from core.sessions import CANCELLED_REASON, EXPIRED_REASON, derive_objective
from models.schemas import FailureCategory, LogSender, SessionStatus
from conftest import make_profile


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_create_pending_session(self, sessions, profile):
        before = datetime.now(timezone.utc)
        s = await sessions.create_session(
            profile.id, "  tem   falta de água  no bairro? ", requested_by="5531988887777",
            requested_from="chat",
        )
        assert s.status == SessionStatus.PENDING
        assert s.objective == "tem falta de água no bairro?"
        assert s.original_query == "  tem   falta de água  no bairro? "
        assert s.tenant_id == profile.tenant_id
        # 120s wait × multiplier 10
        assert before + timedelta(seconds=1199) <= s.expires_at
        assert s.expires_at <= datetime.now(timezone.utc) + timedelta(seconds=1200)

    @pytest.mark.asyncio
    async def test_explicit_objective_wins(self, sessions, profile):
        s = await sessions.create_session(
            profile.id, "pergunte na copasa se estou sem água", requested_by="op",
            objective="check whether there is a water outage",
        )
        assert s.objective == "check whether there is a water outage"

    @pytest.mark.asyncio
    async def test_unknown_profile(self, sessions):
        with pytest.raises(ProfileNotFoundError):
            await sessions.create_session("missing", "q", requested_by="op")

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_use_profile(self, sessions, profile):
        with pytest.raises(ProfileNotFoundError):
            await sessions.create_session(profile.id, "q", requested_by="op", tenant_id="acme")

    @pytest.mark.asyncio
    async def test_inactive_profile(self, sessions, store):
        p = await store.save_profile(make_profile(is_active=False))
        with pytest.raises(ProfileInactiveError):
            await sessions.create_session(p.id, "q", requested_by="op")

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, sessions, profile):
        with pytest.raises(ValueError):
            await sessions.create_session(profile.id, "   ", requested_by="op")

    @pytest.mark.asyncio
    async def test_second_session_rejected_while_first_live(self, sessions, profile):
        await sessions.create_session(profile.id, "q1", requested_by="op")
        with pytest.raises(SessionAlreadyActiveError):
            await sessions.create_session(profile.id, "q2", requested_by="op")

    @pytest.mark.asyncio
    async def test_simultaneous_creates_exactly_one_wins(self, sessions, profile):
        results = await asyncio.gather(
            *[sessions.create_session(profile.id, f"q{i}", requested_by="op") for i in range(5)],
            return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, SessionAlreadyActiveError)]
        assert len(created) == 1
        assert len(rejected) == 4

    @pytest.mark.asyncio
    async def test_new_session_allowed_after_terminal(self, sessions, profile):
        first = await sessions.create_session(profile.id, "q1", requested_by="op")
        await sessions.complete(first.id, "done")
        second = await sessions.create_session(profile.id, "q2", requested_by="op")
        assert second.id != first.id


class TestTransitions:
    @pytest.mark.asyncio
    async def test_complete(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        done = await sessions.complete(s.id, "Sem pendências.", "Tudo certo")
        assert done.status == SessionStatus.COMPLETED
        assert done.success is True
        assert done.result == "Sem pendências."
        assert done.result_summary == "Tudo certo"
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_fail_records_reason_and_category(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        failed = await sessions.fail(s.id, "Gateway down", FailureCategory.DISPATCH)
        assert failed.status == SessionStatus.FAILED
        assert failed.success is False
        assert failed.result == "Gateway down"
        assert failed.failure_category == FailureCategory.DISPATCH

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        await sessions.complete(s.id, "first")
        again = await sessions.fail(s.id, "late failure")
        assert again.status == SessionStatus.COMPLETED
        assert again.result == "first"
        again = await sessions.complete(s.id, "second")
        assert again.result == "first"

    @pytest.mark.asyncio
    async def test_racing_finishers_one_winner(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        await asyncio.gather(
            sessions.complete(s.id, "completed"),
            sessions.fail(s.id, "failed"),
            sessions.expire(s.id),
        )
        final = await sessions.get_session(s.id)
        assert final.is_terminal
        assert final.result in ("completed", "failed", EXPIRED_REASON)

    @pytest.mark.asyncio
    async def test_expire_reports_whether_it_transitioned(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        assert await sessions.expire(s.id) is True
        assert await sessions.expire(s.id) is False
        expired = await sessions.get_session(s.id)
        assert expired.failure_category == FailureCategory.TIMEOUT
        assert "expired" in expired.result

    @pytest.mark.asyncio
    async def test_mark_navigating_only_from_pending(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        session, started = await sessions.mark_navigating(s.id)
        assert started and session.status == SessionStatus.NAVIGATING

        _, started = await sessions.mark_navigating(s.id)
        assert started is False

        await sessions.complete(s.id, "done")
        session, started = await sessions.mark_navigating(s.id)
        assert started is False
        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_session(self, sessions):
        with pytest.raises(SessionNotFoundError):
            await sessions.complete("missing", "x")
        with pytest.raises(SessionNotFoundError):
            await sessions.append_our_message("missing", "x")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_live_session(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        cancelled = await sessions.cancel(s.id)
        assert cancelled.status == SessionStatus.FAILED
        assert cancelled.result == CANCELLED_REASON
        assert cancelled.failure_category == FailureCategory.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_session(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        await sessions.complete(s.id, "done")
        with pytest.raises(SessionAlreadyTerminalError):
            await sessions.cancel(s.id)

    @pytest.mark.asyncio
    async def test_cancel_other_tenant(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        with pytest.raises(SessionNotFoundError):
            await sessions.cancel(s.id, tenant_id="acme")


class TestTranscript:
    @pytest.mark.asyncio
    async def test_append_updates_counters(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        await sessions.append_our_message(s.id, "Olá")
        s = await sessions.append_responder_message(s.id, "Informe seu CPF:")
        assert s.messages_sent == 1
        assert s.messages_received == 1
        assert s.status == SessionStatus.WAITING_RESPONSE
        assert [e.sender for e in s.navigation_log] == [LogSender.US, LogSender.RESPONDER]

    @pytest.mark.asyncio
    async def test_append_after_terminal_is_ignored(self, sessions, profile):
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        await sessions.complete(s.id, "done")
        after = await sessions.append_responder_message(s.id, "late message")
        assert after.navigation_log == []
        assert after.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_find_active_session_for_contact(self, sessions, profile):
        assert await sessions.find_active_session_for_contact(profile.remote_jid) is None
        s = await sessions.create_session(profile.id, "q", requested_by="op")
        found = await sessions.find_active_session_for_contact(profile.remote_jid)
        assert found.id == s.id
        assert await sessions.find_active_session_for_contact("other@s.whatsapp.net") is None


def test_derive_objective():
    assert derive_objective("  a \n b\tc ") == "a b c"
    assert derive_objective("") == ""
