"""
Intent Detector — recognizes operator messages that ask for an automation.

"pergunte na copasa se estou sem água" → start a session with the Copasa
profile and objective "check whether there is a water outage".

A cheap keyword pre-filter runs first; only messages that contain an
explicit request keyword or mention a profile reach the decision function.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from config.settings import AutomationConfig
from core.decision import DecisionFunction
from core.errors import AutomationError, SessionAlreadyActiveError
from core.navigator import Navigator
from core.sessions import SessionManager
from models.schemas import AutomationProfile, AutomationSession, IntentDetection

logger = structlog.get_logger()

_WORD_SPLIT = re.compile(r"[\s,.;:!?()]+")
_MIN_DESCRIPTION_WORD = 4
_STOP_WORDS = frozenset({
    "para", "como", "mais", "tudo", "coisas", "serviços", "sobre",
    "relacionadas", "relacionado", "with", "from", "that", "this", "about",
    "things", "services", "related",
})


def _description_words(description: str) -> list[str]:
    return [
        w for w in _WORD_SPLIT.split((description or "").lower())
        if len(w) >= _MIN_DESCRIPTION_WORD and w not in _STOP_WORDS
    ]


def mentions_profile(message: str, profile: AutomationProfile) -> bool:
    lower = message.lower()
    name = profile.contact_name.lower()
    nickname = (profile.contact_nickname or "").lower()
    return (
        (name and name in lower)
        or (nickname and nickname in lower)
        or any(w in lower for w in _description_words(profile.description))
    )


class IntentDetector:
    def __init__(
        self,
        sessions: SessionManager,
        decision: DecisionFunction,
        navigator: Navigator,
        config: AutomationConfig,
    ):
        self.sessions = sessions
        self.decision = decision
        self.navigator = navigator
        self.config = config

    async def detect(self, message: str, tenant_id: str = "default") -> IntentDetection:
        profiles = await self.sessions.store.list_profiles(tenant_id, active_only=True)
        if not profiles:
            return IntentDetection(reasoning="No active profiles")

        lower = (message or "").lower()
        has_keyword = any(k.lower() in lower for k in self.config.intent_keywords)
        mentioned = any(mentions_profile(message, p) for p in profiles)
        if not has_keyword and not mentioned:
            return IntentDetection(reasoning="No request keyword or profile mention")

        try:
            result = await self.decision.classify_intent(message, profiles)
        except Exception as e:
            logger.warning("intent_detection_failed", error=str(e))
            return IntentDetection(reasoning="Classification error")

        logger.info("intent_detection_result", result=result)
        if not isinstance(result, dict):
            return IntentDetection(reasoning="Unexpected classification output")
        if not result.get("is_automation"):
            return IntentDetection(reasoning=str(result.get("reasoning") or ""))

        contact_name = str(result.get("contact_name") or "").lower().strip()
        profile = next(
            (p for p in profiles
             if contact_name and (
                 p.contact_name.lower() == contact_name
                 or (p.contact_nickname or "").lower() == contact_name
             )),
            None,
        )
        if profile is None:
            return IntentDetection(reasoning=f"Unknown contact '{contact_name}'")

        return IntentDetection(
            is_automation=True,
            profile_id=profile.id,
            objective=str(result.get("objective") or message).strip(),
            reasoning=str(result.get("reasoning") or ""),
        )

    async def detect_and_start(
        self,
        message: str,
        requested_by: str,
        requested_from: str = "",
        tenant_id: str = "default",
    ) -> Optional[AutomationSession]:
        detection = await self.detect(message, tenant_id)
        if not detection.is_automation:
            return None

        try:
            session = await self.sessions.create_session(
                detection.profile_id,
                query=message,
                requested_by=requested_by,
                requested_from=requested_from,
                objective=detection.objective,
                tenant_id=tenant_id,
            )
        except SessionAlreadyActiveError:
            logger.warning("intent_session_already_active", profile_id=detection.profile_id)
            return None
        except AutomationError as e:
            logger.warning("intent_session_not_started", profile_id=detection.profile_id, error=str(e))
            return None

        return await self.navigator.initiate(session.id)
