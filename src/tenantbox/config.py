"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (tokens) live in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``SECRETS__GH_TOKEN``). Secrets use SecretStr for masking in logs.
Any section that is set, from whichever source, must list all its
required fields.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from tenantbox.config import get_settings

    s = get_settings()
    print(s.container.image)
    print(s.credentials_dir)
"""

from __future__ import annotations

import re
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

_DOCKER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class ContainerConfig(_StrictModel):
    image: str = "ghcr.io/goniz/telegram-claude-code-runtime:main"
    name_prefix: str = "session-"  # container = <prefix><tenant>
    volume_suffix: str = "-data"  # volume = <prefix><tenant><suffix>
    workdir: str = "/workspace"
    volume_mount: str = "/volume_data"
    command: list[str] = ["sleep", "infinity"]
    env: dict[str, str] = {}
    stop_timeout: int = 3  # seconds between SIGTERM and SIGKILL on docker stop
    ready_attempts: int = 30
    ready_interval: float = 1.0  # seconds
    provision: bool = True
    pull_on_start: bool = True
    stop_on_shutdown: bool = True
    git_user_name: str = "Claude"
    git_user_email: str = "noreply@anthropic.com"

    @field_validator("name_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not _DOCKER_NAME_RE.match(v):
            msg = f"Invalid container name prefix: {v!r}"
            raise ValueError(msg)
        return v

    @field_validator("ready_attempts")
    @classmethod
    def clamp_ready_attempts(cls, v: int) -> int:
        return max(1, v)


class RuntimeConfig(_StrictModel):
    cli: str = "docker"
    command_timeout: int = 30  # seconds per CLI call
    pull_timeout: int = 300
    max_retries: int = 3  # transient failures only
    base_retry_seconds: float = 0.5


class ExecutionConfig(_StrictModel):
    poll_interval: float = 1.0  # per-read bound, independent of operation deadlines
    terminate_grace: float = 3.0
    run_timeout: float = 60.0
    pty_columns: int = 512  # wide enough that login URLs are never wrapped
    pty_rows: int = 48

    @field_validator("poll_interval", "terminate_grace", "run_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class AssistantAuthConfig(_StrictModel):
    """Interactive login of the in-container assistant CLI."""

    login_command: list[str] = ["claude", "/login"]
    stage_timeout: float = 60.0  # each wait stage (URL, code prompt, result)
    grace_period: float = 60.0  # extra time after a stage expires before kill
    credentials_path: str = "/root/.claude/.credentials.json"
    handshake_response: str = "\r"
    method_response: str = "1\r"
    update_command: list[str] = ["claude", "update"]
    update_timeout: float = 300.0

    @field_validator("stage_timeout", "grace_period", "update_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class DeviceFlowConfig(_StrictModel):
    """OAuth 2.0 device authorization grant (RFC 8628) for source control."""

    client_id: str = "178c6fc778ccc68e1d6a"
    device_code_url: str = "https://github.com/login/device/code"
    token_url: str = "https://github.com/login/oauth/access_token"
    user_url: str = "https://api.github.com/user"
    scopes: list[str] = ["repo", "read:org", "gist"]
    use_pkce: bool = False
    request_timeout: float = 20.0
    default_interval: int = 5
    max_transient_errors: int = 5


class ReposConfig(_StrictModel):
    clone_timeout: float = 300.0
    list_limit: int = 50
    gh_timeout: float = 60.0  # repo listing and auth status


class CredentialsConfig(_StrictModel):
    dir: str | None = None  # None → <data_dir>/credentials


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class SecretsConfig(_StrictModel):
    gh_token: SecretStr | None = None  # exported into every session container when set


# ---------------------------------------------------------------------------
# Explicit-fields validation
# ---------------------------------------------------------------------------


def _is_exempt_field(model_cls: type[BaseModel], field_name: str) -> bool:
    """Optional fields and empty container defaults need not be spelled out."""
    import types
    import typing

    field_info = model_cls.model_fields[field_name]
    annotation = field_info.annotation

    # TOML has no null type
    if isinstance(annotation, types.UnionType) and type(None) in annotation.__args__:
        return True
    origin = getattr(annotation, "__origin__", None)
    if origin is typing.Union and type(None) in annotation.__args__:
        return True

    return field_info.default in ([], {})


def _collect_implicit_fields(model: BaseModel, path: str) -> list[str]:
    """Find fields of config sections that were present but not fully spelled out.

    Sections omitted from config.toml entirely are not checked; they use
    known defaults. A section that is present must list every field.
    """
    errors: list[str] = []
    cls = type(model)

    for field_name in cls.model_fields:
        value = getattr(model, field_name)
        if not isinstance(value, _StrictModel) or field_name not in model.model_fields_set:
            continue
        child_path = f"{path}.{field_name}" if path else field_name
        child_cls = type(value)
        child_missing = {
            f
            for f in set(child_cls.model_fields) - value.model_fields_set
            if not _is_exempt_field(child_cls, f)
        }
        if child_missing:
            errors.append(f"{child_path}: missing {sorted(child_missing)}")
        errors.extend(_collect_implicit_fields(value, child_path))

    return errors


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    container: ContainerConfig = ContainerConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    execution: ExecutionConfig = ExecutionConfig()
    assistant_auth: AssistantAuthConfig = AssistantAuthConfig()
    device_flow: DeviceFlowConfig = DeviceFlowConfig()
    repos: ReposConfig = ReposConfig()
    credentials: CredentialsConfig = CredentialsConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()

    @model_validator(mode="after")
    def _require_explicit_fields(self) -> Settings:
        errors = _collect_implicit_fields(self, "")
        if errors:
            msg = "Config fields must be explicitly set:\n"
            msg += "\n".join(f"  - {e}" for e in errors)
            raise ValueError(msg)
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def credentials_dir(self) -> Path:
        if self.credentials.dir:
            return Path(self.credentials.dir).expanduser().resolve()
        return self.data_dir / "credentials"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings  # noqa: PLW0603
    _settings = None
