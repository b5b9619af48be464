"""
LLM Decision Function — navigates automated responders with Claude or OpenAI.

Decision order for each responder message:
1. Numbered menu + a configured option matching the objective → send it
2. Responder asks for a configured field → send the field value
3. Numbered menu without a match → ask the model for just the option number
4. Otherwise → full JSON decision prompt over the recent transcript

Model failures never raise: opening, summary and intent fall back to
configured defaults and decisions fall back to WAIT.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

from config.settings import AutomationConfig, LLMConfig, get_settings
from core.decision import DecisionFunction, extract_json
from core.heuristics import detect_menu_message, detect_requested_field, select_menu_option
from models.schemas import (
    AutomationProfile, BotType, DecisionAction, DecisionRequest, LogSender,
    NavigationDecision,
)

logger = structlog.get_logger()

_BOT_TYPE_TEXT = {
    BotType.MENU: "Menu with numbered options",
    BotType.FREE_TEXT: "Free text",
    BotType.MIXED: "Mixed (menus and free text)",
}


class LLMDecisionFunction(DecisionFunction):
    """
    Decision function backed by Claude or OpenAI.
    Supports both Anthropic and OpenAI LLM providers.
    """

    def __init__(self, llm: LLMConfig = None, automation: AutomationConfig = None):
        settings = get_settings() if llm is None or automation is None else None
        self._llm = llm or settings.llm
        self._automation = automation or settings.automation
        self._client = None
        self._provider = self._llm.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._llm.api_key)
                    logger.info("llm_client_initialized", provider="openai",
                                model=self._llm.model)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._llm.api_key)
                    logger.info("llm_client_initialized", provider="anthropic",
                                model=self._llm.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            return ""

        max_tokens = max_tokens or self._llm.max_tokens
        temperature = temperature if temperature is not None else self._llm.temperature

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            oai_messages = [{"role": "system", "content": system}] + messages
            response = await client.chat.completions.create(
                model=self._llm.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=oai_messages,
            )
            return response.choices[0].message.content or ""
        else:
            # Anthropic: system prompt is a separate parameter
            response = await client.messages.create(
                model=self._llm.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
            return response.content[0].text

    # ── Opening ───────────────────────────────────────────────

    async def generate_opening(self, request: DecisionRequest) -> str:
        fields = "\n".join(f"- {f.label}: {f.value}" for f in request.fields) or "None"
        system = (
            f'You are an assistant about to contact the automated service of "{request.contact_name}".\n'
            "Write ONLY the first message that starts the interaction. Be short and direct. "
            "Menu bots usually just need a greeting such as \"Oi\" or \"Olá\" to show their menu. "
            "Reply with the message alone, no explanations."
        )
        user = (
            f"OBJECTIVE:\n{request.objective}\n\n"
            f"DATA AVAILABLE TO PROVIDE:\n{fields}\n\n"
            f"CONTACT DESCRIPTION:\n{request.profile_description or 'Not provided'}\n\n"
            f"BOT TYPE: {_BOT_TYPE_TEXT.get(request.bot_type, request.bot_type)}"
        )
        try:
            text = await self._call_llm(
                system=system,
                messages=[{"role": "user", "content": user}],
                max_tokens=200,
                temperature=0.3,
            )
            return (text or "").strip() or self._automation.fallback_opening
        except Exception as e:
            logger.error("opening_generation_failed", session_id=request.session_id, error=str(e))
            return self._automation.fallback_opening

    # ── Decide ────────────────────────────────────────────────

    async def decide(self, request: DecisionRequest) -> Any:
        message = request.latest_message
        is_menu = detect_menu_message(message)

        if is_menu and request.menu_options:
            option = select_menu_option(request.objective, request.menu_options)
            if option:
                logger.info("menu_option_matched", session_id=request.session_id,
                            value=option.value, label=option.label)
                return NavigationDecision(
                    action=DecisionAction.RESPOND,
                    response=option.value,
                    reason=f"Selecting option {option.value}: {option.label}",
                )

        requested = detect_requested_field(message, request.fields)
        if requested:
            logger.info("field_requested", session_id=request.session_id, field=requested.name)
            return NavigationDecision(
                action=DecisionAction.RESPOND,
                response=requested.value,
                reason=f"Responder asked for {requested.label}",
            )

        if is_menu and request.menu_options:
            value = await self._ask_menu_option(request)
            if value:
                return NavigationDecision(
                    action=DecisionAction.RESPOND,
                    response=value,
                    reason="Model selected a menu option",
                )

        try:
            text = await self._call_llm(
                system=self._decision_system_prompt(request),
                messages=[{"role": "user", "content": self._decision_user_prompt(request)}],
                max_tokens=500,
                temperature=0.2,
            )
        except Exception as e:
            logger.error("navigation_decision_failed", session_id=request.session_id, error=str(e))
            return NavigationDecision(action=DecisionAction.WAIT, reason="Error while deciding")

        if not text:
            return NavigationDecision(action=DecisionAction.WAIT, reason="Empty model output")
        return text

    async def _ask_menu_option(self, request: DecisionRequest) -> Optional[str]:
        """Ask the model for an option number; only configured values are accepted."""
        valid = [o.value for o in request.menu_options]
        options = "\n".join(f"{o.value}: {o.label}" for o in request.menu_options)
        prompt = (
            f'The user wants: "{request.objective}"\n\n'
            f"The bot showed these options:\n{options}\n\n"
            f"Bot message:\n{request.latest_message}\n\n"
            "Which number should I type to reach the user's objective? "
            "Reply with the number only."
        )
        try:
            text = (await self._call_llm(
                system="You pick menu options for an automated assistant.",
                messages=[{"role": "user", "content": prompt}],
                max_tokens=10,
                temperature=0.1,
            ) or "").strip()
        except Exception as e:
            logger.warning("menu_option_model_failed", session_id=request.session_id, error=str(e))
            return None

        if text in valid:
            return text
        match = re.search(r"\d+", text)
        if match and match.group(0) in valid:
            return match.group(0)
        return None

    def _decision_system_prompt(self, request: DecisionRequest) -> str:
        return (
            f'You are navigating the automated service of "{request.contact_name}" to reach an objective.\n\n'
            "CRITICAL RULE: if the bot shows a MENU with numbered options (1, 2, 3...), reply ONLY "
            "with the option NUMBER. Do not write text, do not chat.\n\n"
            "Decide:\n"
            "1. A MENU with options → respond with just the best option number\n"
            "2. The bot asks for data we have (CPF, account number...) → respond with just the data\n"
            "3. The bot gave a final answer related to the objective → complete\n"
            "4. Something went wrong or we cannot proceed → fail\n"
            "5. The message looks incomplete or we should wait → wait\n\n"
            "Reply ONLY with valid JSON:\n"
            "{\n"
            '  "action": "respond" | "complete" | "fail" | "wait",\n'
            '  "response": "ONLY the number or requested data, never conversational text",\n'
            '  "reason": "short explanation",\n'
            '  "extracted_result": "if complete, the relevant information from the bot reply"\n'
            "}"
        )

    def _decision_user_prompt(self, request: DecisionRequest) -> str:
        fields = "\n".join(
            f"- {f.label} ({f.name}): {f.value}\n"
            f"  Bot usually asks: {', '.join(f.prompt_patterns) or 'not defined'}"
            for f in request.fields
        ) or "None"
        menu = ""
        if request.menu_options:
            menu = "\n\nCONFIGURED MENU OPTIONS:\n" + "\n".join(
                f'- Type "{o.value}" for: {o.label} (keywords: {", ".join(o.keywords) or "none"})'
                for o in request.menu_options
            )
        history = "\n".join(
            f"[{'BOT' if e.sender == LogSender.RESPONDER else 'US'}]: {e.message}"
            for e in request.transcript
        )
        hints = f"\n\nNAVIGATION HINTS:\n{request.navigation_hints}" if request.navigation_hints else ""
        return (
            f"OBJECTIVE:\n{request.objective}\n\n"
            f"AVAILABLE DATA:\n{fields}{menu}{hints}\n\n"
            f"CONVERSATION HISTORY:\n{history}\n\n"
            f"LATEST BOT MESSAGE:\n{request.latest_message}\n\n"
            f"MESSAGES EXCHANGED: {request.messages_sent + request.messages_received}"
        )

    # ── Summary ───────────────────────────────────────────────

    async def summarize(self, objective: str, final_message: str) -> str:
        try:
            result = await self._call_llm(
                system="Summarize in 1-2 sentences the outcome of this automated interaction. "
                       "Be direct and informative for the user.",
                messages=[{"role": "user", "content": (
                    f"ORIGINAL OBJECTIVE: {objective}\n"
                    f"FINAL BOT REPLY: {final_message}"
                )}],
                max_tokens=200,
                temperature=0.3,
            )
            return (result or "").strip() or self._automation.fallback_summary
        except Exception as e:
            logger.error("summarization_failed", error=str(e))
            return self._automation.fallback_summary

    # ── Intent ────────────────────────────────────────────────

    async def classify_intent(
        self, message: str, profiles: list[AutomationProfile],
    ) -> dict[str, Any]:
        services = "\n".join(
            f"- {p.contact_name} ({p.contact_nickname or 'no nickname'}): "
            f"{p.description or 'no description'}"
            for p in profiles
        )
        system = """Decide whether the user's message can be answered by consulting one of the automated services listed.
Rules:
1. The message mentions or is about one of the services (e.g. "water bill" = the water utility)
2. Or the user explicitly asks to consult/ask something
3. Identify which service can answer

Return ONLY valid JSON:
{
  "is_automation": true/false,
  "contact_name": "exact service name, if any",
  "objective": "what to ask the service",
  "reasoning": "short explanation"
}"""
        try:
            text = await self._call_llm(
                system=system,
                messages=[{"role": "user", "content": (
                    f'MESSAGE: "{message}"\n\nAVAILABLE SERVICES:\n{services}'
                )}],
                max_tokens=300,
                temperature=0.1,
            )
        except Exception as e:
            logger.warning("intent_classification_failed", error=str(e))
            return {"is_automation": False}

        data = extract_json(text or "")
        if data is None:
            return {"is_automation": False}
        if "isAutomation" in data and "is_automation" not in data:
            data["is_automation"] = data["isAutomation"]
        if "contactName" in data and "contact_name" not in data:
            data["contact_name"] = data["contactName"]
        return data
