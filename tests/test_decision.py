"""Tests for decision output parsing and coercion into the closed action set."""
import pytest

from core.decision import coerce_decision, extract_json
from models.schemas import DecisionAction, NavigationDecision


class TestExtractJson:
    def test_plain_object(self):
        assert extract_json('{"action": "wait"}') == {"action": "wait"}

    def test_code_fence(self):
        text = '```json\n{"action": "respond", "response": "2"}\n```'
        assert extract_json(text) == {"action": "respond", "response": "2"}

    def test_surrounding_prose(self):
        text = 'Here is my decision: {"action": "complete", "extracted_result": "ok"} hope it helps'
        assert extract_json(text)["action"] == "complete"

    @pytest.mark.parametrize("text", ["", "no json here", "{not json}", "[1, 2]"])
    def test_unparseable(self, text):
        assert extract_json(text) is None


class TestCoerceDecision:
    def test_respond_dict(self):
        d = coerce_decision({"action": "respond", "response": " 111.111.111-11 ", "reason": "cpf"})
        assert d.action == DecisionAction.RESPOND
        assert d.response == "111.111.111-11"
        assert d.reason == "cpf"

    def test_model_passthrough(self):
        original = NavigationDecision(action=DecisionAction.FAIL, reason="no service")
        d = coerce_decision(original)
        assert d.action == DecisionAction.FAIL
        assert d.reason == "no service"

    def test_raw_text(self):
        d = coerce_decision('```json\n{"action": "complete", "extracted_result": "Sem pendências."}\n```')
        assert d.action == DecisionAction.COMPLETE
        assert d.extracted_result == "Sem pendências."

    def test_camel_case_result(self):
        d = coerce_decision({"action": "complete", "extractedResult": "Sem pendências."})
        assert d.extracted_result == "Sem pendências."

    def test_action_is_case_insensitive(self):
        assert coerce_decision({"action": " RESPOND ", "response": "1"}).action == DecisionAction.RESPOND

    @pytest.mark.parametrize("raw", [
        {"action": "escalate", "response": "x"},
        {"response": "1"},
        {"action": None},
        "I think we should press 2",
        42,
        None,
    ])
    def test_invalid_becomes_wait(self, raw):
        d = coerce_decision(raw)
        assert d.action == DecisionAction.WAIT
        assert d.response == ""

    def test_respond_without_text_becomes_wait(self):
        assert coerce_decision({"action": "respond", "response": "   "}).action == DecisionAction.WAIT
        assert coerce_decision({"action": "respond"}).action == DecisionAction.WAIT
