"""Data models for tenantbox."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum

from pydantic import BaseModel, Field, SecretStr, field_serializer

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_tenant_id(tenant_id: str) -> str:
    """Reject ids that cannot map one-to-one onto container and file names."""
    if not tenant_id or not _TENANT_ID_RE.match(tenant_id) or tenant_id in (".", ".."):
        msg = f"Invalid tenant id: {tenant_id!r}"
        raise ValueError(msg)
    return tenant_id


class SessionStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass
class Session:
    tenant_id: str
    container_id: str
    container_name: str
    volume_name: str
    status: SessionStatus = SessionStatus.CREATING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ContainerInfo:
    """One container as reported by the runtime."""

    id: str
    name: str
    running: bool
    state: str = ""  # "running", "exited", "created", ...
    labels: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class ContainerSpec:
    name: str
    image: str
    volume: str
    volume_mount: str
    workdir: str
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    stop_timeout: int = 3


@dataclass
class ExecResult:
    """Result of a command run to completion inside a container."""

    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class AuthState(IntEnum):
    """Interactive login progress. Values follow the only legal order."""

    INIT = 0
    HANDSHAKE_ACK = 1
    METHOD_SELECTED = 2
    AWAITING_URL = 3
    URL_PROVIDED = 4
    AWAITING_CODE = 5
    CODE_SUBMITTED = 6
    LOGIN_SUCCESSFUL = 7
    LOGIN_FAILED = 8

    @property
    def is_terminal(self) -> bool:
        return self in (AuthState.LOGIN_SUCCESSFUL, AuthState.LOGIN_FAILED)


class Credential(BaseModel):
    """Stored token material for one (tenant, provider) pair.

    Tokens are SecretStr so they never show up in reprs or logs; the JSON
    serializer unwraps them for persistence.
    """

    tenant_id: str
    provider: str
    access_token: SecretStr
    refresh_token: SecretStr | None = None
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    subject: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("access_token", "refresh_token", when_used="json")
    def _dump_secret(self, v: SecretStr | None) -> str | None:
        return v.get_secret_value() if v is not None else None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at


@dataclass
class DeviceAuthorization:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int
    verification_uri_complete: str | None = None


@dataclass
class TokenGrant:
    access_token: str = field(repr=False)
    token_type: str = "bearer"
    scopes: list[str] = field(default_factory=list)
    refresh_token: str | None = field(default=None, repr=False)
    expires_in: int | None = None


@dataclass
class Outcome:
    """What the front-end gets back from every facade operation."""

    ok: bool
    message: str
    error_kind: str | None = None
    url: str | None = None
    user_code: str | None = None
    state: str | None = None
