"""
FastAPI Application — operator REST API + gateway webhooks.

Provides:
- Profile, field and menu option management
- Session start / list / detail / cancel
- Intent detection for free-form operator requests
- Notification listing
- Evolution webhook receiver feeding responder messages to the navigator
- Expiry sweeper running in the background for the app's lifetime
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from channels.base import MessageDeduplicator, MessagingGateway
from channels.whatsapp_adapter import WhatsAppGateway, parse_webhook
from config.settings import Settings, get_settings
from core.decision import DecisionFunction
from core.engine import LLMDecisionFunction
from core.errors import (
    AutomationError, DuplicateFieldError, DuplicateMenuOptionError, DuplicateProfileError,
    FieldNotFoundError, MenuOptionNotFoundError, ProfileInactiveError, ProfileNotFoundError,
    SessionAlreadyActiveError, SessionAlreadyTerminalError, SessionNotFoundError,
)
from core.intent import IntentDetector
from core.navigator import Navigator
from core.notifier import NotificationSink, build_notification_sink
from core.profiles import ProfileService
from core.sessions import SessionManager
from core.sweeper import ExpirySweeper
from database.session import close_db, init_db
from database.store_base import BaseAutomationStore
from database.store_factory import create_store
from models.schemas import BotType, FieldType, SessionStatus

logger = structlog.get_logger()

API_PREFIX = "/api/v1/automation"


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    store: BaseAutomationStore
    gateway: MessagingGateway
    notifier: NotificationSink
    profiles: ProfileService
    sessions: SessionManager
    navigator: Navigator
    sweeper: ExpirySweeper
    intent: IntentDetector


def build_services(
    settings: Settings,
    store: BaseAutomationStore,
    gateway: MessagingGateway = None,
    decision: DecisionFunction = None,
    notifier: NotificationSink = None,
) -> Services:
    """Wire the automation components from explicit configuration."""
    gateway = gateway or WhatsAppGateway(settings.gateway)
    decision = decision or LLMDecisionFunction(settings.llm, settings.automation)
    notifier = notifier or build_notification_sink(store, settings.notifications)

    sessions = SessionManager(store, settings.automation)
    navigator = Navigator(
        sessions, decision, gateway, notifier, settings.automation,
        action_url=settings.notifications.action_url,
    )
    return Services(
        settings=settings,
        store=store,
        gateway=gateway,
        notifier=notifier,
        profiles=ProfileService(store),
        sessions=sessions,
        navigator=navigator,
        sweeper=ExpirySweeper(sessions, settings.automation.sweep_interval_seconds),
        intent=IntentDetector(sessions, decision, navigator, settings.automation),
    )


_settings_boot = get_settings()
services = build_services(
    _settings_boot,
    create_store({
        "store_backend": _settings_boot.database.store_backend,
        "store_file_dir": _settings_boot.database.store_file_dir,
    }),
)
deduplicator = MessageDeduplicator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.database.store_backend == "sql":
        await init_db()

    await services.sweeper.start()
    logger.info("contact_autopilot_started",
                store=type(services.store).__name__,
                budget_mode=settings.automation.budget_mode)
    yield

    await services.sweeper.stop()
    await services.navigator.drain()
    await services.gateway.close()
    await services.notifier.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("contact_autopilot_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Contact Autopilot API",
    description="Automated conversations with third-party responder bots",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_ERROR_STATUS: dict[type, int] = {
    ProfileNotFoundError: 404,
    FieldNotFoundError: 404,
    MenuOptionNotFoundError: 404,
    SessionNotFoundError: 404,
    ProfileInactiveError: 400,
    DuplicateFieldError: 400,
    DuplicateMenuOptionError: 400,
    DuplicateProfileError: 409,
    SessionAlreadyActiveError: 409,
    SessionAlreadyTerminalError: 409,
}


def _http_error(e: AutomationError) -> HTTPException:
    status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(e, cls)), 400)
    return HTTPException(status, detail={"code": e.code, "message": str(e)})


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class FieldRequest(BaseModel):
    name: str
    label: str
    value: str
    prompt_patterns: list[str] = []
    field_type: FieldType = FieldType.TEXT
    priority: Optional[int] = None
    is_required: bool = True


class FieldUpdateRequest(BaseModel):
    label: Optional[str] = None
    value: Optional[str] = None
    prompt_patterns: Optional[list[str]] = None
    field_type: Optional[FieldType] = None
    priority: Optional[int] = None
    is_required: Optional[bool] = None


class MenuOptionRequest(BaseModel):
    value: str
    label: str
    description: str = ""
    keywords: list[str] = []
    priority: Optional[int] = None
    is_exit: bool = False


class MenuOptionUpdateRequest(BaseModel):
    label: Optional[str] = None
    description: Optional[str] = None
    keywords: Optional[list[str]] = None
    priority: Optional[int] = None
    is_exit: Optional[bool] = None


class ProfileCreateRequest(BaseModel):
    remote_jid: str
    contact_name: str
    contact_nickname: str = ""
    profile_pic_url: str = ""
    description: str = ""
    bot_type: BotType = BotType.MENU
    max_wait_seconds: int = Field(120, gt=0)
    max_retries: int = Field(3, gt=0)
    navigation_hints: str = ""
    fields: list[FieldRequest] = []
    menu_options: list[MenuOptionRequest] = []


class ProfileUpdateRequest(BaseModel):
    contact_name: Optional[str] = None
    contact_nickname: Optional[str] = None
    profile_pic_url: Optional[str] = None
    description: Optional[str] = None
    bot_type: Optional[BotType] = None
    max_wait_seconds: Optional[int] = Field(None, gt=0)
    max_retries: Optional[int] = Field(None, gt=0)
    navigation_hints: Optional[str] = None
    is_active: Optional[bool] = None
    fields: Optional[list[FieldRequest]] = None
    menu_options: Optional[list[MenuOptionRequest]] = None


class StartSessionRequest(BaseModel):
    profile_id: str
    query: str = Field(..., min_length=1)
    requested_by: str = "operator"
    requested_from: str = "dashboard"


class IntentRequest(BaseModel):
    message: str = Field(..., min_length=1)
    requested_by: str = "operator"
    requested_from: str = "chat"


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(services.store).__name__,
        "sweeper_running": services.sweeper.running,
        "gateway": await services.gateway.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  PROFILES
# ══════════════════════════════════════════════════════════════

@app.get(f"{API_PREFIX}/profiles")
async def list_profiles(x_tenant_id: str = Header("default")):
    return await services.profiles.list_profiles(x_tenant_id)


@app.get(f"{API_PREFIX}/profiles/lookup")
async def lookup_profile(name: str = Query(..., min_length=1), x_tenant_id: str = Header("default")):
    """Active profile whose name or nickname matches `name`, fully or partially."""
    profile = await services.profiles.find_profile_by_name(name, x_tenant_id)
    if profile is None:
        raise _http_error(ProfileNotFoundError())
    return _dump(profile)


@app.get(f"{API_PREFIX}/profiles/{{profile_id}}")
async def get_profile(profile_id: str, x_tenant_id: str = Header("default")):
    try:
        profile = await services.profiles.get_profile(x_tenant_id, profile_id)
    except AutomationError as e:
        raise _http_error(e)
    sessions = await services.sessions.list_sessions(x_tenant_id, profile_id=profile_id, limit=10)
    return {**_dump(profile), "sessions": [_dump(s) for s in sessions]}


@app.post(f"{API_PREFIX}/profiles", status_code=201)
async def create_profile(req: ProfileCreateRequest, x_tenant_id: str = Header("default")):
    try:
        profile = await services.profiles.create_profile(x_tenant_id, req.model_dump())
    except AutomationError as e:
        raise _http_error(e)
    return _dump(profile)


@app.put(f"{API_PREFIX}/profiles/{{profile_id}}")
async def update_profile(
    profile_id: str, req: ProfileUpdateRequest, x_tenant_id: str = Header("default"),
):
    try:
        profile = await services.profiles.update_profile(
            x_tenant_id, profile_id, req.model_dump(exclude_unset=True),
        )
    except AutomationError as e:
        raise _http_error(e)
    return _dump(profile)


@app.delete(f"{API_PREFIX}/profiles/{{profile_id}}")
async def delete_profile(profile_id: str, x_tenant_id: str = Header("default")):
    try:
        await services.profiles.delete_profile(x_tenant_id, profile_id)
    except AutomationError as e:
        raise _http_error(e)
    return {"success": True}


@app.post(f"{API_PREFIX}/profiles/{{profile_id}}/toggle")
async def toggle_profile(profile_id: str, x_tenant_id: str = Header("default")):
    try:
        profile = await services.profiles.toggle_profile(x_tenant_id, profile_id)
    except AutomationError as e:
        raise _http_error(e)
    return _dump(profile)


# ── Fields ────────────────────────────────────────────────────

@app.post(f"{API_PREFIX}/profiles/{{profile_id}}/fields", status_code=201)
async def add_field(profile_id: str, req: FieldRequest, x_tenant_id: str = Header("default")):
    try:
        field = await services.profiles.add_field(x_tenant_id, profile_id, req.model_dump())
    except AutomationError as e:
        raise _http_error(e)
    return _dump(field)


@app.put(f"{API_PREFIX}/profiles/{{profile_id}}/fields/{{field_id}}")
async def update_field(
    profile_id: str, field_id: str, req: FieldUpdateRequest,
    x_tenant_id: str = Header("default"),
):
    try:
        field = await services.profiles.update_field(
            x_tenant_id, profile_id, field_id, req.model_dump(exclude_unset=True),
        )
    except AutomationError as e:
        raise _http_error(e)
    return _dump(field)


@app.delete(f"{API_PREFIX}/profiles/{{profile_id}}/fields/{{field_id}}")
async def remove_field(profile_id: str, field_id: str, x_tenant_id: str = Header("default")):
    try:
        await services.profiles.remove_field(x_tenant_id, profile_id, field_id)
    except AutomationError as e:
        raise _http_error(e)
    return {"success": True}


# ── Menu options ──────────────────────────────────────────────

@app.post(f"{API_PREFIX}/profiles/{{profile_id}}/menu-options", status_code=201)
async def add_menu_option(
    profile_id: str, req: MenuOptionRequest, x_tenant_id: str = Header("default"),
):
    try:
        option = await services.profiles.add_menu_option(x_tenant_id, profile_id, req.model_dump())
    except AutomationError as e:
        raise _http_error(e)
    return _dump(option)


@app.put(f"{API_PREFIX}/profiles/{{profile_id}}/menu-options/{{option_id}}")
async def update_menu_option(
    profile_id: str, option_id: str, req: MenuOptionUpdateRequest,
    x_tenant_id: str = Header("default"),
):
    try:
        option = await services.profiles.update_menu_option(
            x_tenant_id, profile_id, option_id, req.model_dump(exclude_unset=True),
        )
    except AutomationError as e:
        raise _http_error(e)
    return _dump(option)


@app.delete(f"{API_PREFIX}/profiles/{{profile_id}}/menu-options/{{option_id}}")
async def remove_menu_option(
    profile_id: str, option_id: str, x_tenant_id: str = Header("default"),
):
    try:
        await services.profiles.remove_menu_option(x_tenant_id, profile_id, option_id)
    except AutomationError as e:
        raise _http_error(e)
    return {"success": True}


@app.get(f"{API_PREFIX}/available-contacts")
async def available_contacts(x_tenant_id: str = Header("default")):
    return await services.profiles.list_available_contacts(x_tenant_id)


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@app.get(f"{API_PREFIX}/sessions")
async def list_sessions(
    status: Optional[SessionStatus] = None,
    profile_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    x_tenant_id: str = Header("default"),
):
    sessions = await services.sessions.list_sessions(
        x_tenant_id, status=status, profile_id=profile_id, limit=limit,
    )
    return [_dump(s) for s in sessions]


@app.get(f"{API_PREFIX}/sessions/{{session_id}}")
async def get_session(session_id: str, x_tenant_id: str = Header("default")):
    try:
        session = await services.sessions.get_session(session_id, x_tenant_id)
    except AutomationError as e:
        raise _http_error(e)
    return _dump(session)


@app.post(f"{API_PREFIX}/sessions/start", status_code=201)
async def start_session(
    req: StartSessionRequest, background: BackgroundTasks,
    x_tenant_id: str = Header("default"),
):
    try:
        session = await services.sessions.create_session(
            req.profile_id, req.query,
            requested_by=req.requested_by,
            requested_from=req.requested_from,
            tenant_id=x_tenant_id,
        )
    except AutomationError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(400, detail={"code": "invalid_query", "message": str(e)})
    background.add_task(services.navigator.initiate, session.id)
    return _dump(session)


@app.post(f"{API_PREFIX}/sessions/{{session_id}}/cancel")
async def cancel_session(session_id: str, x_tenant_id: str = Header("default")):
    try:
        session = await services.sessions.cancel(session_id, x_tenant_id)
    except AutomationError as e:
        raise _http_error(e)
    return _dump(session)


@app.post(f"{API_PREFIX}/sweep")
async def sweep_now():
    return {"expired": await services.sweeper.sweep()}


# ══════════════════════════════════════════════════════════════
#  INTENT
# ══════════════════════════════════════════════════════════════

@app.post(f"{API_PREFIX}/intent/detect")
async def detect_intent(req: IntentRequest, x_tenant_id: str = Header("default")):
    return _dump(await services.intent.detect(req.message, x_tenant_id))


@app.post(f"{API_PREFIX}/intent/start")
async def detect_and_start(req: IntentRequest, x_tenant_id: str = Header("default")):
    session = await services.intent.detect_and_start(
        req.message, req.requested_by, req.requested_from, x_tenant_id,
    )
    return {"started": session is not None, "session": _dump(session) if session else None}


# ══════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ══════════════════════════════════════════════════════════════

@app.get(f"{API_PREFIX}/notifications")
async def list_notifications(
    limit: int = Query(50, ge=1, le=200), x_tenant_id: str = Header("default"),
):
    return [_dump(n) for n in await services.store.list_notifications(x_tenant_id, limit)]


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp (Evolution API)
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/whatsapp", status_code=202)
async def whatsapp_webhook(
    request: Request, background: BackgroundTasks,
    x_tenant_id: str = Header("default"),
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON")

    inbound = parse_webhook(payload)
    if inbound is None:
        return {"status": "ignored", "reason": "not_a_text_message"}
    if inbound.from_me:
        return {"status": "ignored", "reason": "outgoing_message"}
    if deduplicator.is_duplicate(inbound.message_id):
        return {"status": "ignored", "reason": "duplicate"}

    await services.profiles.record_contact(
        x_tenant_id, inbound.remote_jid, name=inbound.push_name, is_group=inbound.is_group,
    )
    if inbound.is_group:
        return {"status": "ignored", "reason": "group_message"}

    background.add_task(
        services.navigator.handle_incoming, inbound.remote_jid, inbound.text, x_tenant_id,
    )
    logger.info("whatsapp_webhook_accepted", remote_jid=inbound.remote_jid,
                message_id=inbound.message_id)
    return {"status": "accepted"}
