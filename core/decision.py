"""
Decision Function — the reasoning contract the navigator consults.

Four modes:
  - generate_opening: first message that starts the conversation
  - decide:           next action given the transcript and latest message
  - summarize:        short human summary of a completed interaction
  - classify_intent:  does an operator message ask for an automation?

Any backend (hosted model, rules, test double) can satisfy it. Whatever a
backend returns from decide goes through coerce_decision, so malformed
output degrades to WAIT instead of reaching the navigator.
"""
from __future__ import annotations

import abc
import json
import re
import structlog
from typing import Any, Optional

from pydantic import ValidationError

from models.schemas import (
    AutomationProfile, DecisionAction, DecisionRequest, NavigationDecision,
)

logger = structlog.get_logger()

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_VALID_ACTIONS = {a.value for a in DecisionAction}


class DecisionFunction(abc.ABC):
    """Reasoning backend for the navigation engine."""

    @abc.abstractmethod
    async def generate_opening(self, request: DecisionRequest) -> str:
        ...

    @abc.abstractmethod
    async def decide(self, request: DecisionRequest) -> Any:
        """Return a NavigationDecision, a dict, or raw model text."""
        ...

    @abc.abstractmethod
    async def summarize(self, objective: str, final_message: str) -> str:
        ...

    @abc.abstractmethod
    async def classify_intent(
        self, message: str, profiles: list[AutomationProfile],
    ) -> dict[str, Any]:
        """
        Return {"is_automation": bool, "contact_name": str,
        "objective": str, "reasoning": str}.
        """
        ...


def extract_json(text: str) -> Optional[dict[str, Any]]:
    """
    Find the outermost JSON object in model output, tolerating code fences
    and surrounding prose. Returns None when nothing parses to a dict.
    """
    if not text:
        return None
    text = text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        text = parts[1].strip() if len(parts) > 1 else text
        if text.startswith("json"):
            text = text[4:].strip()

    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except (ValueError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def _wait(reason: str) -> NavigationDecision:
    return NavigationDecision(action=DecisionAction.WAIT, reason=reason)


def coerce_decision(raw: Any) -> NavigationDecision:
    """
    Normalize decision output into the closed action set.

    Accepts a NavigationDecision, a dict (camelCase keys tolerated) or raw
    text containing JSON. Unknown actions, unparseable payloads and
    `respond` without a response all become WAIT.
    """
    if isinstance(raw, NavigationDecision):
        data = raw.model_dump()
    elif isinstance(raw, dict):
        data = dict(raw)
    elif isinstance(raw, str):
        data = extract_json(raw)
        if data is None:
            logger.warning("decision_unparseable", preview=raw[:200])
            return _wait("Could not parse decision")
    else:
        logger.warning("decision_unexpected_type", type=type(raw).__name__)
        return _wait("Could not parse decision")

    action = data.get("action")
    if isinstance(action, DecisionAction):
        action = action.value
    action = str(action or "").strip().lower()
    if action not in _VALID_ACTIONS:
        logger.warning("decision_invalid_action", action=action)
        return _wait(f"Invalid action '{action}' coerced to wait")

    if "extractedResult" in data and "extracted_result" not in data:
        data["extracted_result"] = data["extractedResult"]

    try:
        decision = NavigationDecision(
            action=DecisionAction(action),
            response=str(data.get("response") or "").strip(),
            reason=str(data.get("reason") or ""),
            extracted_result=str(data.get("extracted_result") or "").strip(),
        )
    except ValidationError as e:
        logger.warning("decision_invalid", error=str(e))
        return _wait("Invalid decision payload")

    if decision.action == DecisionAction.RESPOND and not decision.response:
        return _wait("Respond without a response coerced to wait")
    return decision
