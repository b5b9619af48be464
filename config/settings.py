"""
Configuration loader for the Contact Autopilot service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.2
    max_tokens: int = 1024
    api_key: str = ""


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./contact_autopilot.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class GatewayConfig:
    base_url: str = "http://evolution:8080"
    api_key: str = ""
    instance: str = "default"
    timeout_seconds: float = 10.0


@dataclass
class AutomationConfig:
    reply_delay_min: float = 2.0        # human-like pause before each reply
    reply_delay_max: float = 5.0
    dispatch_timeout: float = 10.0
    decision_timeout: float = 30.0
    budget_mode: str = "global"         # "global" | "profile"
    max_messages_sent: int = 20         # ceiling used when budget_mode == "global"
    expiry_multiplier: int = 10         # deadline = max_wait_seconds * multiplier
    sweep_interval_seconds: int = 60
    transcript_tail: int = 10
    fallback_opening: str = "Olá"
    fallback_summary: str = "Interaction completed."
    intent_keywords: list[str] = field(default_factory=lambda: [
        "pergunte", "pergunta", "consulte", "consulta", "verifique", "verifica",
        "fale com", "fala com", "entre em contato", "manda mensagem",
        "envie mensagem", "liga para", "ligar para", "checka", "check",
        "ask", "contact",
    ])


@dataclass
class NotificationConfig:
    webhook_url: str = ""
    webhook_secret: str = ""
    action_url: str = "/contact-automation"


@dataclass
class Settings:
    app_name: str = "ContactAutopilot"
    debug: bool = False
    default_tenant: str = "default"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")

# top-level YAML key → section dataclass
_SECTIONS = {
    "llm": LLMConfig,
    "database": DatabaseConfig,
    "gateway": GatewayConfig,
    "automation": AutomationConfig,
    "notifications": NotificationConfig,
}


def _expand_env(obj: Any) -> Any:
    """Substitute ${VAR} references in every string of a parsed YAML tree."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], default):
    values = {name: getattr(default, name) for name in cls.__dataclass_fields__}
    values.update((k, v) for k, v in (raw or {}).items() if k in values)
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """
    Load settings from YAML. The path defaults to $AUTOPILOT_CONFIG, then
    config/settings.yaml; a missing file yields the built-in defaults.
    Unknown keys are ignored.
    """
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "AUTOPILOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()
    path = Path(config_path)

    if path.exists():
        with open(path) as f:
            raw = _expand_env(yaml.safe_load(f) or {})

        for key in ("app_name", "debug", "default_tenant"):
            if key in raw:
                setattr(settings, key, raw[key])
        for key, cls in _SECTIONS.items():
            if key in raw:
                setattr(settings, key, _section(cls, raw[key], getattr(settings, key)))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
