"""Tests for YAML settings loading."""
import pytest

from config.settings import AutomationConfig, Settings, load_settings


@pytest.fixture(autouse=True)
def _isolate_cached_settings(monkeypatch):
    monkeypatch.setattr("config.settings._settings", None)


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings == Settings()
    assert settings.automation.max_messages_sent == 20
    assert settings.automation.budget_mode == "global"
    assert settings.database.store_backend == "memory"


def test_yaml_sections_and_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("EVOLUTION_API_KEY", "evo-123")
    path = tmp_path / "settings.yaml"
    path.write_text(
        "debug: true\n"
        "gateway:\n"
        "  base_url: http://evo:8080\n"
        "  api_key: ${EVOLUTION_API_KEY}\n"
        "automation:\n"
        "  budget_mode: profile\n"
        "  reply_delay_min: 0\n"
        "  unknown_key: ignored\n"
        "notifications:\n"
        "  webhook_url: ${UNSET_VAR_FOR_TEST}\n"
    )

    settings = load_settings(str(path))

    assert settings.debug is True
    assert settings.gateway.api_key == "evo-123"
    assert settings.gateway.instance == "default"
    assert settings.automation.budget_mode == "profile"
    assert settings.automation.reply_delay_min == 0
    assert settings.automation.reply_delay_max == AutomationConfig().reply_delay_max
    assert settings.notifications.webhook_url == "${UNSET_VAR_FOR_TEST}"


def test_env_var_selects_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("app_name: Autopilot-Staging\n")
    monkeypatch.setenv("AUTOPILOT_CONFIG", str(path))
    assert load_settings().app_name == "Autopilot-Staging"
