"""
Profile service — CRUD for automation profiles, their fields and menu
options, plus the known-contact directory used to offer new targets.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import normalize_address
from core.errors import (
    DuplicateFieldError, DuplicateMenuOptionError, DuplicateProfileError,
    FieldNotFoundError, MenuOptionNotFoundError, ProfileNotFoundError,
)
from database.store_base import BaseAutomationStore
from models.schemas import AutomationField, AutomationProfile, KnownContact, MenuOption

logger = structlog.get_logger()

_CHILD_KEYS = ("fields", "menu_options")


def _build_children(items: list[dict[str, Any]], model, key: str, error_cls) -> list:
    """Validate a wholesale child list; priority defaults to list position."""
    built, seen = [], set()
    for index, raw in enumerate(items or []):
        data = dict(raw)
        if data.get("priority") is None:
            data["priority"] = index
        child = model.model_validate(data)
        natural = getattr(child, key)
        if natural in seen:
            raise error_cls(f"{error_cls.__doc__.rstrip('.')}: {natural}")
        seen.add(natural)
        built.append(child)
    return built


class ProfileService:
    """Operator-facing management of automation profiles."""

    def __init__(self, store: BaseAutomationStore):
        self.store = store

    # ── Profiles ──────────────────────────────────────────────

    async def list_profiles(self, tenant_id: str) -> list[dict[str, Any]]:
        profiles = await self.store.list_profiles(tenant_id)
        listed = []
        for p in profiles:
            active = await self.store.find_active_session(p.id)
            listed.append({
                **p.model_dump(mode="json"),
                "has_active_session": active is not None,
                "active_session": active.model_dump(mode="json") if active else None,
            })
        return listed

    async def get_profile(self, tenant_id: str, profile_id: str) -> AutomationProfile:
        profile = await self.store.get_profile(profile_id)
        if profile is None or profile.tenant_id != tenant_id:
            raise ProfileNotFoundError()
        return profile

    async def create_profile(self, tenant_id: str, data: dict[str, Any]) -> AutomationProfile:
        if await self.store.find_profile_by_remote_jid(tenant_id, data.get("remote_jid", "")):
            raise DuplicateProfileError()

        payload = {k: v for k, v in data.items() if k not in _CHILD_KEYS and v is not None}
        profile = AutomationProfile.model_validate({**payload, "tenant_id": tenant_id})
        profile.fields = _build_children(data.get("fields"), AutomationField, "name", DuplicateFieldError)
        profile.menu_options = _build_children(
            data.get("menu_options"), MenuOption, "value", DuplicateMenuOptionError,
        )
        profile = await self.store.save_profile(profile)
        logger.info("profile_created", profile_id=profile.id, contact=profile.contact_name,
                    remote_jid=profile.remote_jid, tenant_id=tenant_id)
        return profile

    async def update_profile(
        self, tenant_id: str, profile_id: str, data: dict[str, Any],
    ) -> AutomationProfile:
        """Fields and menu options, when given, replace the existing lists wholesale."""
        profile = await self.get_profile(tenant_id, profile_id)
        changes = {
            k: v for k, v in data.items()
            if k not in _CHILD_KEYS and k not in ("id", "tenant_id", "remote_jid") and v is not None
        }
        updated = AutomationProfile.model_validate({**profile.model_dump(), **changes})
        if data.get("fields") is not None:
            updated.fields = _build_children(data["fields"], AutomationField, "name", DuplicateFieldError)
        if data.get("menu_options") is not None:
            updated.menu_options = _build_children(
                data["menu_options"], MenuOption, "value", DuplicateMenuOptionError,
            )
        updated = await self.store.save_profile(updated)
        logger.info("profile_updated", profile_id=profile_id, changed=sorted(data.keys()))
        return updated

    async def delete_profile(self, tenant_id: str, profile_id: str) -> None:
        await self.get_profile(tenant_id, profile_id)
        await self.store.delete_profile(profile_id)
        logger.info("profile_deleted", profile_id=profile_id, tenant_id=tenant_id)

    async def toggle_profile(self, tenant_id: str, profile_id: str) -> AutomationProfile:
        profile = await self.get_profile(tenant_id, profile_id)
        profile.is_active = not profile.is_active
        profile = await self.store.save_profile(profile)
        logger.info("profile_toggled", profile_id=profile_id, is_active=profile.is_active)
        return profile

    # ── Fields ────────────────────────────────────────────────

    async def add_field(self, tenant_id: str, profile_id: str, data: dict[str, Any]) -> AutomationField:
        profile = await self.get_profile(tenant_id, profile_id)
        field = AutomationField.model_validate({k: v for k, v in data.items() if v is not None})
        if any(f.name == field.name for f in profile.fields):
            raise DuplicateFieldError(f"Field '{field.name}' already exists in this profile")
        profile.fields.append(field)
        await self.store.save_profile(profile)
        return field

    async def update_field(
        self, tenant_id: str, profile_id: str, field_id: str, data: dict[str, Any],
    ) -> AutomationField:
        profile = await self.get_profile(tenant_id, profile_id)
        existing = profile.get_field(field_id)
        if existing is None:
            raise FieldNotFoundError()
        changes = {k: v for k, v in data.items() if v is not None and k not in ("id", "name")}
        updated = AutomationField.model_validate({**existing.model_dump(), **changes})
        profile.fields = [updated if f.id == field_id else f for f in profile.fields]
        await self.store.save_profile(profile)
        return updated

    async def remove_field(self, tenant_id: str, profile_id: str, field_id: str) -> None:
        profile = await self.get_profile(tenant_id, profile_id)
        if profile.get_field(field_id) is None:
            raise FieldNotFoundError()
        profile.fields = [f for f in profile.fields if f.id != field_id]
        await self.store.save_profile(profile)

    # ── Menu options ──────────────────────────────────────────

    async def add_menu_option(self, tenant_id: str, profile_id: str, data: dict[str, Any]) -> MenuOption:
        profile = await self.get_profile(tenant_id, profile_id)
        option = MenuOption.model_validate({k: v for k, v in data.items() if v is not None})
        if any(m.value == option.value for m in profile.menu_options):
            raise DuplicateMenuOptionError(f"Option '{option.value}' already exists in this profile")
        profile.menu_options.append(option)
        await self.store.save_profile(profile)
        return option

    async def update_menu_option(
        self, tenant_id: str, profile_id: str, option_id: str, data: dict[str, Any],
    ) -> MenuOption:
        profile = await self.get_profile(tenant_id, profile_id)
        existing = profile.get_menu_option(option_id)
        if existing is None:
            raise MenuOptionNotFoundError()
        changes = {k: v for k, v in data.items() if v is not None and k not in ("id", "value")}
        updated = MenuOption.model_validate({**existing.model_dump(), **changes})
        profile.menu_options = [updated if m.id == option_id else m for m in profile.menu_options]
        await self.store.save_profile(profile)
        return updated

    async def remove_menu_option(self, tenant_id: str, profile_id: str, option_id: str) -> None:
        profile = await self.get_profile(tenant_id, profile_id)
        if profile.get_menu_option(option_id) is None:
            raise MenuOptionNotFoundError()
        profile.menu_options = [m for m in profile.menu_options if m.id != option_id]
        await self.store.save_profile(profile)

    # ── Lookup helpers ────────────────────────────────────────

    async def find_profile_by_name(self, term: str, tenant_id: str) -> Optional[AutomationProfile]:
        """Exact or partial match on name or nickname, in either direction."""
        term = (term or "").lower().strip()
        if not term:
            return None
        for p in await self.store.list_profiles(tenant_id, active_only=True):
            name = p.contact_name.lower()
            nickname = (p.contact_nickname or "").lower()
            if name == term or (nickname and nickname == term):
                return p
            if term in name or (nickname and term in nickname):
                return p
            if name in term or (nickname and nickname in term):
                return p
        return None

    # ── Known contacts ────────────────────────────────────────

    async def record_contact(
        self, tenant_id: str, remote_jid: str, name: str = "",
        profile_pic_url: str = "", is_group: bool = False,
    ) -> KnownContact:
        return await self.store.upsert_contact(KnownContact(
            tenant_id=tenant_id, remote_jid=remote_jid, name=name,
            profile_pic_url=profile_pic_url, is_group=is_group,
        ))

    async def list_available_contacts(self, tenant_id: str) -> list[dict[str, str]]:
        """Non-group contacts that have no automation profile yet, sorted by name."""
        taken = {p.remote_jid for p in await self.store.list_profiles(tenant_id)}
        available = [
            {
                "remote_jid": c.remote_jid,
                "name": c.name or normalize_address(c.remote_jid),
                "profile_pic_url": c.profile_pic_url,
            }
            for c in await self.store.list_contacts(tenant_id)
            if not c.is_group and c.remote_jid not in taken
        ]
        available.sort(key=lambda c: c["name"].lower())
        return available
