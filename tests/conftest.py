"""Shared test fixtures for tenantbox."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from tenantbox.errors import (
    ContainerConflictError,
    ContainerNotFoundError,
    StreamBrokenError,
    VolumeNotFoundError,
)
from tenantbox.types import ContainerInfo, ContainerSpec, ExecResult

# ---------------------------------------------------------------------------
# Shared helpers (plain functions and classes, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "data_dir", "credentials_dir"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container, device_flow, etc.) and cached
    property overrides (project_root, data_dir, credentials_dir).

    Usage::

        s = make_settings(credentials_dir=tmp_path)
        s = make_settings(container=ContainerConfig(ready_attempts=2))
    """
    from tenantbox.config import (
        AssistantAuthConfig,
        ContainerConfig,
        CredentialsConfig,
        DeviceFlowConfig,
        ExecutionConfig,
        LoggingConfig,
        ReposConfig,
        RuntimeConfig,
        SecretsConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "container": ContainerConfig(ready_interval=0.01, pull_on_start=False),
        "runtime": RuntimeConfig(base_retry_seconds=0.0),
        "execution": ExecutionConfig(poll_interval=0.05, terminate_grace=1.0, run_timeout=10.0),
        "assistant_auth": AssistantAuthConfig(),
        "device_flow": DeviceFlowConfig(),
        "repos": ReposConfig(),
        "credentials": CredentialsConfig(),
        "logging": LoggingConfig(),
        "secrets": SecretsConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


class FakeRuntime:
    """In-memory container runtime.

    ``exec_argv`` returns the command unchanged, so anything that actually
    spawns an exec runs it on the host; use it only with harmless commands
    or together with a fake channel.
    """

    name = "fake"
    cli = "fake"

    def __init__(self) -> None:
        self.containers: dict[str, ContainerInfo] = {}
        self.specs: dict[str, ContainerSpec] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.calls: list[tuple] = []
        self.execs: list[list[str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.create_delay = 0.0

    def fail(self, method: str, *errors: Exception) -> None:
        """Make the next calls to ``method`` raise ``errors`` in order."""
        self.failures.setdefault(method, []).extend(errors)

    def _enter(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)

    def _require(self, name: str) -> ContainerInfo:
        for info in self.containers.values():
            if name in (info.name, info.id):
                return info
        raise ContainerNotFoundError(f"docker failed: Error: No such container: {name}")

    async def ensure_running(self) -> None:
        self._enter("ensure_running")

    async def ensure_image(self, image: str) -> None:
        self._enter("ensure_image", image)

    async def create_volume(self, name: str, labels: dict[str, str]) -> None:
        self._enter("create_volume", name)
        self.volumes.setdefault(name, dict(labels))

    async def remove_volume(self, name: str) -> None:
        self._enter("remove_volume", name)
        if name not in self.volumes:
            raise VolumeNotFoundError(f"docker failed: Error: No such volume: {name}")
        del self.volumes[name]

    async def create_container(self, spec: ContainerSpec) -> str:
        self._enter("create_container", spec.name)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if spec.name in self.containers:
            msg = f'Conflict. The container name "/{spec.name}" is already in use'
            raise ContainerConflictError(msg)
        info = ContainerInfo(
            id=f"id-{spec.name}",
            name=spec.name,
            running=False,
            state="created",
            labels=dict(spec.labels),
        )
        self.containers[spec.name] = info
        self.specs[spec.name] = spec
        return info.id

    async def start_container(self, name: str) -> None:
        self._enter("start_container", name)
        info = self._require(name)
        info.running, info.state = True, "running"

    async def stop_container(self, name: str, *, timeout: int = 3) -> None:
        self._enter("stop_container", name)
        info = self._require(name)
        info.running, info.state = False, "exited"

    async def remove_container(self, name: str) -> None:
        self._enter("remove_container", name)
        info = self._require(name)
        del self.containers[info.name]

    async def inspect_container(self, name: str) -> ContainerInfo | None:
        self._enter("inspect_container", name)
        try:
            return dataclasses.replace(self._require(name))
        except ContainerNotFoundError:
            return None

    async def list_containers(self, prefix: str) -> list[ContainerInfo]:
        self._enter("list_containers", prefix)
        return [dataclasses.replace(c) for n, c in self.containers.items() if n.startswith(prefix)]

    def exec_argv(self, container, command, *, tty, interactive, workdir=None, env=None):
        self.execs.append(list(command))
        return list(command)

    def add_container(self, name: str, *, running: bool = True, labels=None) -> ContainerInfo:
        info = ContainerInfo(
            id=f"id-{name}",
            name=name,
            running=running,
            state="running" if running else "exited",
            labels=dict(labels or {}),
        )
        self.containers[name] = info
        return info


class FakeHandle:
    """Scripted stand-in for an ExecutionHandle driving a terminal program.

    ``responder`` maps each write to the output the program prints next.
    """

    def __init__(
        self,
        initial: str = "",
        responder: Callable[[str], str | None] | None = None,
    ) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self.responder = responder
        self.written: list[str] = []
        self.terminated = False
        self._eof = False
        self.exit_code: int | None = None
        if initial:
            self.feed(initial)

    def feed(self, text: str) -> None:
        self._queue.put_nowait(text)

    def finish(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self._queue.put_nowait(None)

    @property
    def at_eof(self) -> bool:
        return self._eof

    def poll(self) -> int | None:
        return self.exit_code

    async def read(self, timeout: float | None = None) -> str:
        if self._eof:
            return ""
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout or 0.01)
        except TimeoutError:
            return ""
        if item is None:
            self._eof = True
            return ""
        return item

    async def write(self, data: str | bytes) -> None:
        if self.terminated:
            raise StreamBrokenError("program has exited")
        text = data.decode() if isinstance(data, bytes) else data
        self.written.append(text)
        if self.responder is not None:
            reply = self.responder(text)
            if reply:
                self.feed(reply)

    async def terminate(self) -> None:
        self.terminated = True
        if self.exit_code is None:
            self.exit_code = -15


class FakeChannel:
    """Execution channel whose ``run`` answers every command with ``ready``."""

    def __init__(self, handle: FakeHandle | None = None) -> None:
        self.run = AsyncMock(return_value=ExecResult(exit_code=0, output="ready\n"))
        self.execute = AsyncMock(return_value=handle or FakeHandle())

    def commands(self) -> list[list[str]]:
        return [c.args[1] for c in self.run.call_args_list]


LOGIN_URL = "https://claude.ai/oauth/authorize?code=true&client_id=abc&state=xyz"
AUTH_CODE = "A" * 32 + "#" + "B" * 32
CREDENTIALS_JSON = (
    '{"claudeAiOauth": {"accessToken": "sk-ant-oat01-access", "refreshToken": "sk-ant-ort01-r",'
    ' "expiresAt": 4102444800000, "scopes": ["user:inference"], "subscriptionType": "pro"}}'
)


def login_program(*, result: str = "Login successful. Press Enter to continue\n") -> FakeHandle:
    """A FakeHandle that behaves like the assistant's login TUI."""

    def respond(data: str) -> str | None:
        if data == "\r":
            return "\x1b[1mSelect login method:\x1b[0m\n 1. Claude account\n 2. Console\n"
        if data == "1\r":
            return (
                "Browser didn't open? Use the url below to sign in:\n\n"
                f"{LOGIN_URL}\n\nPaste code here if prompted > "
            )
        if data.endswith("\r"):
            return result
        return None

    return FakeHandle(initial="Choose the text style that looks best\n", responder=respond)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, credentials under the test's tmp_path.
    """
    safe = make_settings(
        project_root=tmp_path,
        data_dir=tmp_path,
        credentials_dir=tmp_path / "credentials",
    )
    monkeypatch.setattr("tenantbox.config._settings", safe)
    monkeypatch.setattr("tenantbox.runtime.runtime._runtime", None)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def store(tmp_path):
    from tenantbox.credentials.store import CredentialStore

    return CredentialStore(tmp_path / "credentials")
