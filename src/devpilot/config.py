"""Runtime configuration for the harness and its providers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from devpilot.harness.models import ProviderKind

STATE_DIR_NAME = ".devpilot"
DEFAULT_PROVIDER_IDS = ("claude", "codex", "gemini")

DEFAULT_COMMAND_TEMPLATES = {
    "claude": (
        "claude -p --model {model} --permission-mode acceptEdits "
        '--allowed-tools "Read,Write,Edit,Bash(git:*),Bash(ls:*),Bash(cat:*)" '
        "-- {prompt}"
    ),
    "codex": "codex exec --sandbox workspace-write --model {model} {prompt}",
    "gemini": "gemini --model {model} --approval-mode auto_edit --prompt {prompt}",
}
DEFAULT_MODELS = {
    "claude": ("sonnet",),
    "codex": ("gpt-5-codex",),
    "gemini": ("gemini-2.5-pro",),
}


@dataclass(slots=True)
class HarnessSettings:
    """Runner timing and retry policy."""

    step_timeout_seconds: float = 600.0
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    rate_limit_ceiling_seconds: float = 300.0
    default_rate_limit_backoff_seconds: float = 60.0
    circuit_cooldown_seconds: float = 300.0
    liveness_interval_seconds: float = 1.0
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class DetectorSettings:
    """Extra literal phrases appended to the built-in detector vocabulary."""

    rate_limit_patterns: tuple[str, ...] = ()
    feedback_headings: tuple[str, ...] = ()
    completion_patterns: tuple[str, ...] = ()


@dataclass(slots=True)
class ProviderSettings:
    """One configured provider."""

    id: str
    kind: ProviderKind = ProviderKind.CLI_PASSTHROUGH
    priority: int = 100
    max_retries: int = 3
    models: tuple[str, ...] = ()
    command_template: str | None = None
    endpoint: str | None = None
    api_key_env: str | None = None

    @property
    def model(self) -> str:
        return self.models[0] if self.models else ""


def _default_providers() -> tuple[ProviderSettings, ...]:
    return tuple(
        _default_provider(provider_id, index)
        for index, provider_id in enumerate(DEFAULT_PROVIDER_IDS)
    )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    project_dir: Path = Path(".")
    db_path: Path = Path(STATE_DIR_NAME) / "harness.db"
    harness: HarnessSettings = field(default_factory=HarnessSettings)
    detector: DetectorSettings = field(default_factory=DetectorSettings)
    providers: tuple[ProviderSettings, ...] = field(default_factory=_default_providers)
    sqlite_busy_timeout_ms: int = 5_000

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @classmethod
    def from_env(cls, project_dir: Path | None = None, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        resolved_project = (project_dir or Path(os.getenv("DEVPILOT_PROJECT_DIR", "."))).resolve()
        env_db_path = os.getenv("DEVPILOT_DB_PATH")
        default_db_path = resolved_project / STATE_DIR_NAME / "harness.db"
        return cls(
            project_dir=resolved_project,
            db_path=db_path or (Path(env_db_path) if env_db_path else default_db_path),
            harness=HarnessSettings(
                step_timeout_seconds=_env_float("DEVPILOT_STEP_TIMEOUT_SECONDS", 600.0),
                retry_base_seconds=_env_float("DEVPILOT_RETRY_BASE_SECONDS", 2.0),
                retry_max_seconds=_env_float("DEVPILOT_RETRY_MAX_SECONDS", 60.0),
                rate_limit_ceiling_seconds=_env_float(
                    "DEVPILOT_RATE_LIMIT_CEILING_SECONDS",
                    300.0,
                ),
                default_rate_limit_backoff_seconds=_env_float(
                    "DEVPILOT_DEFAULT_RATE_LIMIT_BACKOFF_SECONDS",
                    60.0,
                ),
                circuit_cooldown_seconds=_env_float("DEVPILOT_CIRCUIT_COOLDOWN_SECONDS", 300.0),
                liveness_interval_seconds=_env_float("DEVPILOT_LIVENESS_INTERVAL_SECONDS", 1.0),
                graceful_shutdown_seconds=_env_float("DEVPILOT_GRACEFUL_SHUTDOWN_SECONDS", 5.0),
            ),
            detector=DetectorSettings(
                rate_limit_patterns=_env_csv("DEVPILOT_RATE_LIMIT_PATTERNS"),
                feedback_headings=_env_csv("DEVPILOT_FEEDBACK_HEADINGS"),
                completion_patterns=_env_csv("DEVPILOT_COMPLETION_PATTERNS"),
            ),
            providers=_collect_providers(),
            sqlite_busy_timeout_ms=int(os.getenv("DEVPILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    def validate(self) -> None:
        """Raise configuration error if providers or timings are unusable."""

        harness = self.harness
        if harness.step_timeout_seconds <= 0:
            raise ValueError("DEVPILOT_STEP_TIMEOUT_SECONDS must be > 0.")
        if harness.liveness_interval_seconds <= 0:
            raise ValueError("DEVPILOT_LIVENESS_INTERVAL_SECONDS must be > 0.")
        if harness.retry_base_seconds < 0 or harness.retry_max_seconds < 0:
            raise ValueError(
                "DEVPILOT_RETRY_BASE_SECONDS and DEVPILOT_RETRY_MAX_SECONDS must be >= 0.",
            )
        if harness.rate_limit_ceiling_seconds < 0:
            raise ValueError("DEVPILOT_RATE_LIMIT_CEILING_SECONDS must be >= 0.")
        if not self.providers:
            raise ValueError("At least one provider is required. Set DEVPILOT_PROVIDERS.")

        seen: set[str] = set()
        for provider in self.providers:
            prefix = _provider_env_prefix(provider.id)
            if provider.id in seen:
                raise ValueError(f"Duplicate provider id in DEVPILOT_PROVIDERS: {provider.id!r}")
            seen.add(provider.id)
            if provider.max_retries < 0:
                raise ValueError(f"{prefix}_MAX_RETRIES must be >= 0.")
            if provider.kind is ProviderKind.API:
                if not provider.endpoint:
                    raise ValueError(f"{prefix}_ENDPOINT is required for api providers.")
                continue
            template = (provider.command_template or "").strip()
            if not template:
                raise ValueError(f"{prefix}_COMMAND is required for provider {provider.id!r}.")
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(f"{prefix}_COMMAND must include {{prompt}} or {{prompt_file}}.")


def _collect_providers() -> tuple[ProviderSettings, ...]:
    raw = os.getenv("DEVPILOT_PROVIDERS", "").strip()
    provider_ids = (
        [part.strip() for part in raw.split(",") if part.strip()] if raw else DEFAULT_PROVIDER_IDS
    )
    providers: list[ProviderSettings] = []
    for index, provider_id in enumerate(provider_ids):
        default = _default_provider(provider_id, index)
        prefix = _provider_env_prefix(provider_id)
        kind_raw = os.getenv(f"{prefix}_KIND")
        try:
            kind = ProviderKind(kind_raw.strip().lower()) if kind_raw else default.kind
        except ValueError as error:
            supported = ", ".join(item.value for item in ProviderKind)
            raise ValueError(
                f"Invalid {prefix}_KIND: {kind_raw!r}. Expected one of: {supported}",
            ) from error
        models = _env_csv(f"{prefix}_MODELS") or default.models
        providers.append(
            ProviderSettings(
                id=provider_id,
                kind=kind,
                priority=_env_int(f"{prefix}_PRIORITY", default.priority),
                max_retries=_env_int(f"{prefix}_MAX_RETRIES", default.max_retries),
                models=models,
                command_template=os.getenv(f"{prefix}_COMMAND", default.command_template or "")
                or None,
                endpoint=os.getenv(f"{prefix}_ENDPOINT") or None,
                api_key_env=os.getenv(f"{prefix}_API_KEY_ENV") or None,
            ),
        )
    return tuple(providers)


def _default_provider(provider_id: str, index: int) -> ProviderSettings:
    known = provider_id in DEFAULT_COMMAND_TEMPLATES
    return ProviderSettings(
        id=provider_id,
        kind=ProviderKind.SUBSCRIPTION if known else ProviderKind.CLI_PASSTHROUGH,
        priority=(index + 1) * 10,
        max_retries=3,
        models=DEFAULT_MODELS.get(provider_id, ()),
        command_template=DEFAULT_COMMAND_TEMPLATES.get(provider_id),
    )


def _provider_env_prefix(provider_id: str) -> str:
    return "DEVPILOT_PROVIDER_" + provider_id.upper().replace("-", "_").replace(".", "_")


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error
