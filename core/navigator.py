"""
Navigation Engine — drives one automated conversation turn by turn.

initiate(session_id)
    pending → navigating, send an opening message. Any failure fails the
    session ("Failed to start: ..."); there is no retry.

handle_incoming(remote_jid, text)
    1. Resolve the live session for the responder (none → not handled)
    2. Record the responder message
    3. Enforce the message budget before consulting the decision function
    4. Ask the decision function (bounded by decision_timeout)
    5. Coerce the answer into respond | complete | fail | wait and execute it

All work on a session runs under a per-session lock, so turns for the same
session never interleave within a process. Cross-process safety comes from
the store's compare-and-swap transitions.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from channels.base import GatewayError, MessagingGateway
from config.settings import AutomationConfig
from core.decision import DecisionFunction, coerce_decision
from core.errors import SessionNotFoundError
from core.notifier import NotificationSink
from core.sessions import SessionManager
from models.schemas import (
    AutomationProfile, AutomationSession, DecisionAction, DecisionRequest,
    FailureCategory, NavigationDecision, Notification, SessionStatus,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()

BUDGET_EXHAUSTED_REASON = "Message budget exhausted"
DEFAULT_FAIL_REASON = "Responder could not satisfy the objective"


@dataclass
class HandleResult:
    handled: bool
    session_id: Optional[str] = None
    action: str = "none"
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "handled": self.handled,
            "session_id": self.session_id,
            "action": self.action,
            "reason": self.reason,
        }


class Navigator:
    """
    Owns the turn loop for every session in this process.

    Collaborators are injected; nothing here reads global settings.
    """

    def __init__(
        self,
        sessions: SessionManager,
        decision: DecisionFunction,
        gateway: MessagingGateway,
        notifier: NotificationSink,
        config: AutomationConfig,
        action_url: str = "/contact-automation",
    ):
        self.sessions = sessions
        self.decision = decision
        self.gateway = gateway
        self.notifier = notifier
        self.config = config
        self.action_url = action_url
        self._locks = KeyedLock()
        self._background: set[asyncio.Task] = set()

    @property
    def store(self):
        return self.sessions.store

    def message_budget(self, profile: AutomationProfile) -> int:
        if self.config.budget_mode == "profile":
            return profile.max_retries
        return self.config.max_messages_sent

    # ── Initiate ──────────────────────────────────────────────

    async def initiate(self, session_id: str) -> Optional[AutomationSession]:
        async with self._locks.hold(session_id):
            try:
                session = await self.sessions.get_session(session_id)
            except SessionNotFoundError:
                logger.error("initiate_session_missing", session_id=session_id)
                return None
            if session.is_terminal:
                logger.info("initiate_skipped_terminal", session_id=session_id,
                            status=session.status.value)
                return session

            try:
                profile = await self.store.get_profile(session.profile_id)
                if profile is None:
                    raise LookupError(f"profile {session.profile_id} no longer exists")

                session, started = await self.sessions.mark_navigating(session_id)
                if not started:
                    # the conversation is already under way (or over); no opening
                    logger.info("initiate_skipped_started", session_id=session_id,
                                status=session.status.value)
                    return session

                opening = await self._generate_opening(self._build_request(session, profile))

                # An operator may have cancelled while the opening was generated
                session = await self.sessions.get_session(session_id)
                if session.is_terminal:
                    return session

                await self._dispatch(profile.remote_jid, opening)
                session = await self.sessions.append_our_message(session_id, opening)
                logger.info("session_initiated", session_id=session_id,
                            contact=profile.contact_name, opening=opening[:50])
                return session
            except Exception as e:
                logger.error("session_initiate_failed", session_id=session_id, error=str(e))
                return await self.sessions.fail(
                    session_id, f"Failed to start: {e}", _category_for(e),
                )

    # ── Incoming ──────────────────────────────────────────────

    async def handle_incoming(
        self, remote_jid: str, text: str, tenant_id: str = "default",
    ) -> HandleResult:
        session = await self.sessions.find_active_session_for_contact(remote_jid, tenant_id)
        if session is None:
            return HandleResult(handled=False, reason="No active session for contact")

        logger.info("responder_message_received", session_id=session.id, preview=text[:100])
        async with self._locks.hold(session.id):
            try:
                return await self._handle_turn(session.id, text)
            except Exception as e:
                logger.error("navigation_turn_failed", session_id=session.id, error=str(e))
                return HandleResult(True, session.id, "error", str(e))

    async def _handle_turn(self, session_id: str, text: str) -> HandleResult:
        session = await self.sessions.append_responder_message(session_id, text)
        if session.is_terminal:
            return HandleResult(True, session_id, "none", "Session already finished")

        profile = await self.store.get_profile(session.profile_id)
        if profile is None:
            await self.sessions.fail(session_id, "Profile no longer exists")
            return HandleResult(True, session_id, "fail", "Profile no longer exists")

        budget = self.message_budget(profile)
        if session.messages_sent >= budget:
            logger.warning("message_budget_exhausted", session_id=session_id,
                           messages_sent=session.messages_sent, budget=budget)
            await self.sessions.fail(session_id, BUDGET_EXHAUSTED_REASON, FailureCategory.BUDGET)
            return HandleResult(True, session_id, "fail", BUDGET_EXHAUSTED_REASON)

        decision = await self._decide(self._build_request(session, profile, text))
        logger.info("navigation_decision", session_id=session_id,
                    action=decision.action.value, reason=decision.reason)

        if decision.action == DecisionAction.RESPOND:
            return await self._respond(session, profile, decision)
        if decision.action == DecisionAction.COMPLETE:
            return await self._complete(session, profile, decision, text)
        if decision.action == DecisionAction.FAIL:
            reason = decision.reason or DEFAULT_FAIL_REASON
            await self.sessions.fail(session_id, reason, FailureCategory.DECISION)
            return HandleResult(True, session_id, "fail", reason)
        return HandleResult(True, session_id, "wait", decision.reason)

    # ── Actions ───────────────────────────────────────────────

    async def _respond(
        self, session: AutomationSession, profile: AutomationProfile, decision: NavigationDecision,
    ) -> HandleResult:
        delay = random.uniform(self.config.reply_delay_min, self.config.reply_delay_max)
        if delay > 0:
            await asyncio.sleep(delay)

        current = await self.sessions.get_session(session.id)
        if current.is_terminal:
            return HandleResult(True, session.id, "none", "Session finished before reply")

        try:
            await self._dispatch(profile.remote_jid, decision.response)
        except Exception as e:
            reason = f"Failed to deliver reply: {e}"
            await self.sessions.fail(session.id, reason, FailureCategory.DISPATCH)
            return HandleResult(True, session.id, "fail", reason)

        await self.sessions.append_our_message(session.id, decision.response)

        exit_option = profile.exit_option_for(decision.response)
        if exit_option:
            reason = f"Exit option selected: {exit_option.label}"
            await self.sessions.fail(session.id, reason, FailureCategory.EXIT_OPTION)
            return HandleResult(True, session.id, "fail", reason)

        return HandleResult(True, session.id, "respond", decision.reason)

    async def _complete(
        self, session: AutomationSession, profile: AutomationProfile,
        decision: NavigationDecision, final_message: str,
    ) -> HandleResult:
        result = decision.extracted_result or final_message
        summary = await self._summarize(session.objective, final_message)
        finished = await self.sessions.complete(session.id, result, summary)
        if finished.status != SessionStatus.COMPLETED:
            return HandleResult(True, session.id, "none", "Session finished elsewhere")

        self._spawn(self._notify(Notification(
            tenant_id=session.tenant_id,
            title=f"Result: {profile.contact_name}",
            message=result,
            metadata={
                "session_id": session.id,
                "profile_id": session.profile_id,
                "objective": session.objective,
            },
            action_url=self.action_url,
        )))
        return HandleResult(True, session.id, "complete", decision.reason)

    # ── Bounded collaborator calls ────────────────────────────

    async def _generate_opening(self, request: DecisionRequest) -> str:
        try:
            opening = await asyncio.wait_for(
                self.decision.generate_opening(request), timeout=self.config.decision_timeout,
            )
        except Exception as e:
            logger.warning("opening_fallback", session_id=request.session_id, error=str(e))
            return self.config.fallback_opening
        return (opening or "").strip() or self.config.fallback_opening

    async def _decide(self, request: DecisionRequest) -> NavigationDecision:
        try:
            raw = await asyncio.wait_for(
                self.decision.decide(request), timeout=self.config.decision_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("decision_timeout", session_id=request.session_id)
            return NavigationDecision(action=DecisionAction.WAIT, reason="Decision timed out")
        except Exception as e:
            logger.error("decision_error", session_id=request.session_id, error=str(e))
            return NavigationDecision(action=DecisionAction.WAIT, reason="Decision error")
        return coerce_decision(raw)

    async def _summarize(self, objective: str, final_message: str) -> str:
        try:
            summary = await asyncio.wait_for(
                self.decision.summarize(objective, final_message),
                timeout=self.config.decision_timeout,
            )
        except Exception as e:
            logger.warning("summary_fallback", error=str(e))
            return self.config.fallback_summary
        return (summary or "").strip() or self.config.fallback_summary

    async def _dispatch(self, address: str, text: str) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.gateway.send(address, text), timeout=self.config.dispatch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GatewayError("Gateway timed out", channel=self.gateway.channel, retryable=True) from e

    # ── Notifications ─────────────────────────────────────────

    async def _notify(self, notification: Notification) -> None:
        try:
            await self.notifier.notify(notification)
        except Exception as e:
            logger.error("notification_failed", session_id=notification.metadata.get("session_id"),
                         error=str(e))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending fire-and-forget work (notifications)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Helpers ───────────────────────────────────────────────

    def _build_request(
        self, session: AutomationSession, profile: AutomationProfile, latest: str = "",
    ) -> DecisionRequest:
        return DecisionRequest(
            session_id=session.id,
            objective=session.objective,
            contact_name=profile.contact_name,
            profile_description=profile.description,
            navigation_hints=profile.navigation_hints,
            bot_type=profile.bot_type,
            fields=profile.sorted_fields(),
            menu_options=profile.sorted_menu_options(),
            transcript=session.transcript_tail(self.config.transcript_tail),
            latest_message=latest,
            messages_sent=session.messages_sent,
            messages_received=session.messages_received,
        )


def _category_for(error: Exception) -> FailureCategory:
    if isinstance(error, GatewayError):
        return FailureCategory.DISPATCH
    return FailureCategory.ERROR
