"""Tests for IntentDetector — starting automations from free-form requests."""
import pytest

from core.intent import IntentDetector, mentions_profile
from models.schemas import SessionStatus
from conftest import RESPONDER_JID, make_profile


@pytest.fixture
def detector(sessions, decision, navigator, automation_config) -> IntentDetector:
    return IntentDetector(sessions, decision, navigator, automation_config)


class TestMentions:
    def test_name_nickname_and_description(self):
        p = make_profile()
        assert mentions_profile("como está a COPASA hoje", p)
        assert mentions_profile("problema com a agua", p)
        assert mentions_profile("minhas faturas atrasaram", p)
        assert not mentions_profile("qual a previsão do tempo", p)


class TestDetect:
    @pytest.mark.asyncio
    async def test_no_profiles(self, detector, decision):
        result = await detector.detect("pergunte na copasa")
        assert not result.is_automation

    @pytest.mark.asyncio
    async def test_prefilter_skips_classifier(self, detector, decision, profile):
        decision.intent = RuntimeError("should not be called")
        result = await detector.detect("bom dia, tudo bem?")
        assert not result.is_automation
        assert "keyword" in result.reasoning

    @pytest.mark.asyncio
    async def test_detects_profile(self, detector, decision, profile):
        decision.intent = {
            "is_automation": True, "contact_name": "copasa",
            "objective": "check whether there is a water outage", "reasoning": "water",
        }
        result = await detector.detect("pergunte na copasa se estou sem água")
        assert result.is_automation
        assert result.profile_id == profile.id
        assert result.objective == "check whether there is a water outage"

    @pytest.mark.asyncio
    async def test_matches_nickname(self, detector, decision, profile):
        decision.intent = {"is_automation": True, "contact_name": "Agua", "objective": "x"}
        assert (await detector.detect("consulte a agua")).profile_id == profile.id

    @pytest.mark.asyncio
    async def test_unknown_contact_name(self, detector, decision, profile):
        decision.intent = {"is_automation": True, "contact_name": "Cemig", "objective": "x"}
        result = await detector.detect("pergunte na cemig")
        assert not result.is_automation
        assert "cemig" in result.reasoning

    @pytest.mark.asyncio
    async def test_classifier_errors_are_not_automation(self, detector, decision, profile):
        decision.intent = RuntimeError("model down")
        assert not (await detector.detect("pergunte na copasa")).is_automation
        decision.intent = "not a dict"
        assert not (await detector.detect("pergunte na copasa")).is_automation

    @pytest.mark.asyncio
    async def test_inactive_profiles_ignored(self, detector, decision, store):
        await store.save_profile(make_profile(is_active=False))
        decision.intent = {"is_automation": True, "contact_name": "Copasa"}
        assert not (await detector.detect("pergunte na copasa")).is_automation


class TestDetectAndStart:
    @pytest.mark.asyncio
    async def test_starts_session(self, detector, decision, sessions, profile, gateway):
        decision.intent = {
            "is_automation": True, "contact_name": "Copasa", "objective": "verificar falta de água",
        }
        session = await detector.detect_and_start(
            "pergunte na copasa se estou sem água", requested_by="5531988887777",
            requested_from="whatsapp",
        )
        assert session.status == SessionStatus.NAVIGATING
        assert session.objective == "verificar falta de água"
        assert session.original_query == "pergunte na copasa se estou sem água"
        assert session.requested_from == "whatsapp"
        assert gateway.sent == [(RESPONDER_JID, "Olá")]

    @pytest.mark.asyncio
    async def test_already_active(self, detector, decision, sessions, profile):
        await sessions.create_session(profile.id, "q", requested_by="op")
        decision.intent = {"is_automation": True, "contact_name": "Copasa", "objective": "x"}
        assert await detector.detect_and_start("pergunte na copasa", requested_by="op") is None

    @pytest.mark.asyncio
    async def test_not_automation(self, detector, decision, profile, gateway):
        assert await detector.detect_and_start("pergunte na copasa", requested_by="op") is None
        assert gateway.sent == []
