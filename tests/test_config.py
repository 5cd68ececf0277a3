from __future__ import annotations

from pathlib import Path

import allure
import pytest

from devpilot.config import HarnessSettings, ProviderSettings, Settings
from devpilot.harness.models import ProviderKind

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "DEVPILOT_PROJECT_DIR",
        "DEVPILOT_DB_PATH",
        "DEVPILOT_PROVIDERS",
        "DEVPILOT_STEP_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_use_project_state_dir(tmp_path: Path) -> None:
    settings = Settings.from_env(project_dir=tmp_path)

    assert settings.project_dir == tmp_path.resolve()
    assert settings.db_path == tmp_path.resolve() / ".devpilot" / "harness.db"
    assert settings.state_dir == tmp_path.resolve() / ".devpilot"
    assert [provider.id for provider in settings.providers] == ["claude", "codex", "gemini"]
    assert [provider.priority for provider in settings.providers] == [10, 20, 30]
    assert settings.providers[0].kind is ProviderKind.SUBSCRIPTION
    assert settings.providers[0].model == "sonnet"
    settings.validate()


def test_providers_and_timings_come_from_env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("DEVPILOT_PROVIDERS", "local-llm, claude")
    monkeypatch.setenv("DEVPILOT_PROVIDER_LOCAL_LLM_KIND", "api")
    monkeypatch.setenv("DEVPILOT_PROVIDER_LOCAL_LLM_ENDPOINT", "http://127.0.0.1:8080/complete")
    monkeypatch.setenv("DEVPILOT_PROVIDER_LOCAL_LLM_MODELS", "llama, qwen")
    monkeypatch.setenv("DEVPILOT_PROVIDER_CLAUDE_PRIORITY", "1")
    monkeypatch.setenv("DEVPILOT_PROVIDER_CLAUDE_MAX_RETRIES", "5")
    monkeypatch.setenv("DEVPILOT_STEP_TIMEOUT_SECONDS", "90")
    monkeypatch.setenv("DEVPILOT_DB_PATH", str(tmp_path / "custom.db"))

    settings = Settings.from_env(project_dir=tmp_path)

    local, claude = settings.providers
    assert local.kind is ProviderKind.API
    assert local.endpoint == "http://127.0.0.1:8080/complete"
    assert local.models == ("llama", "qwen")
    assert local.priority == 10
    assert claude.priority == 1
    assert claude.max_retries == 5
    assert settings.harness.step_timeout_seconds == 90.0
    assert settings.db_path == tmp_path / "custom.db"
    settings.validate()


def test_invalid_env_values_are_reported(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("DEVPILOT_PROVIDERS", "claude")
    monkeypatch.setenv("DEVPILOT_PROVIDER_CLAUDE_KIND", "carrier-pigeon")

    with pytest.raises(ValueError, match="Invalid DEVPILOT_PROVIDER_CLAUDE_KIND"):
        Settings.from_env(project_dir=tmp_path)

    monkeypatch.setenv("DEVPILOT_PROVIDER_CLAUDE_KIND", "subscription")
    monkeypatch.setenv("DEVPILOT_STEP_TIMEOUT_SECONDS", "soon")

    with pytest.raises(ValueError, match="Invalid numeric value"):
        Settings.from_env(project_dir=tmp_path)


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(providers=()), "At least one provider"),
        (
            Settings(harness=HarnessSettings(step_timeout_seconds=0)),
            "DEVPILOT_STEP_TIMEOUT_SECONDS",
        ),
        (
            Settings(providers=(ProviderSettings(id="x", command_template="agent"),)),
            "DEVPILOT_PROVIDER_X_COMMAND must include",
        ),
        (
            Settings(providers=(ProviderSettings(id="x"),)),
            "DEVPILOT_PROVIDER_X_COMMAND is required",
        ),
        (
            Settings(providers=(ProviderSettings(id="x", kind=ProviderKind.API),)),
            "DEVPILOT_PROVIDER_X_ENDPOINT",
        ),
        (
            Settings(
                providers=(
                    ProviderSettings(id="x", command_template="a {prompt}"),
                    ProviderSettings(id="x", command_template="b {prompt}"),
                ),
            ),
            "Duplicate provider id",
        ),
    ],
)
def test_validate_rejects_unusable_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
