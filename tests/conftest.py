"""Shared test fixtures for Contact Autopilot."""
import asyncio
from typing import Any, Callable, Optional, Union

import pytest
import pytest_asyncio

from channels.base import MessagingGateway
from config.settings import AutomationConfig
from core.decision import DecisionFunction
from core.navigator import Navigator
from core.notifier import StoreNotificationSink
from core.sessions import SessionManager
from database.store_memory import InMemoryAutomationStore
from models.schemas import (
    AutomationField, AutomationProfile, BotType, DecisionRequest, FieldType,
    MenuOption,
)

RESPONDER_JID = "5531999990000@s.whatsapp.net"
CPF = "111.111.111-11"


# ──────────────────────────────────────────────────────────────
#  Test doubles
# ──────────────────────────────────────────────────────────────

class FakeGateway(MessagingGateway):
    """Records every send; can be told to fail or hang."""

    channel = "fake"

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0.0

    async def send(self, address: str, text: str) -> dict[str, Any]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((address, text))
        return {"status": "sent", "channel_message_id": f"fake-{len(self.sent)}"}

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


Decision = Union[dict, str, Exception, Callable[[DecisionRequest], Any]]


class ScriptedDecisionFunction(DecisionFunction):
    """
    Decision function driven by a queue of canned answers.

    Each queued item is returned as-is from decide(), raised if it is an
    exception, or called with the request if it is callable. An empty queue
    answers WAIT.
    """

    def __init__(self, opening: str = "Olá", summary: str = "Resumo"):
        self.opening = opening
        self.summary = summary
        self.decisions: list[Decision] = []
        self.requests: list[DecisionRequest] = []
        self.intent: Any = {"is_automation": False}
        self.opening_error: Optional[Exception] = None
        self.decide_delay: float = 0.0

    def script(self, *decisions: Decision) -> "ScriptedDecisionFunction":
        self.decisions.extend(decisions)
        return self

    async def generate_opening(self, request: DecisionRequest) -> str:
        if self.opening_error is not None:
            raise self.opening_error
        return self.opening

    async def decide(self, request: DecisionRequest) -> Any:
        self.requests.append(request)
        if self.decide_delay:
            await asyncio.sleep(self.decide_delay)
        if not self.decisions:
            return {"action": "wait", "reason": "nothing scripted"}
        item = self.decisions.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    async def summarize(self, objective: str, final_message: str) -> str:
        return self.summary

    async def classify_intent(self, message, profiles) -> dict[str, Any]:
        if isinstance(self.intent, Exception):
            raise self.intent
        return self.intent


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def automation_config() -> AutomationConfig:
    """Fast config: no human-like pause, short timeouts."""
    return AutomationConfig(
        reply_delay_min=0,
        reply_delay_max=0,
        dispatch_timeout=1.0,
        decision_timeout=1.0,
    )


@pytest.fixture
def store() -> InMemoryAutomationStore:
    return InMemoryAutomationStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def decision() -> ScriptedDecisionFunction:
    return ScriptedDecisionFunction()


@pytest.fixture
def sessions(store, automation_config) -> SessionManager:
    return SessionManager(store, automation_config)


@pytest.fixture
def navigator(sessions, decision, gateway, store, automation_config) -> Navigator:
    return Navigator(sessions, decision, gateway, StoreNotificationSink(store), automation_config)


def make_profile(**overrides) -> AutomationProfile:
    """A water-utility menu bot with a CPF field and three options, one of them exit."""
    data = dict(
        remote_jid=RESPONDER_JID,
        contact_name="Copasa",
        contact_nickname="agua",
        description="Companhia de saneamento, faturas e falta de água",
        bot_type=BotType.MENU,
        max_wait_seconds=120,
        max_retries=3,
        fields=[
            AutomationField(
                name="cpf", label="CPF", value=CPF,
                prompt_patterns=["informe seu cpf", "digite seu cpf"],
                field_type=FieldType.CPF, priority=0,
            ),
        ],
        menu_options=[
            MenuOption(value="1", label="Segunda via de conta", keywords=["fatura", "boleto"], priority=0),
            MenuOption(value="2", label="Falta de água", keywords=["sem água", "falta"], priority=1),
            MenuOption(value="9", label="Encerrar atendimento", is_exit=True, priority=2),
        ],
    )
    data.update(overrides)
    return AutomationProfile(**data)


@pytest_asyncio.fixture
async def profile(store) -> AutomationProfile:
    return await store.save_profile(make_profile())
