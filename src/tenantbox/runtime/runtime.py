"""Container runtime seam.

Docker (through its CLI) is the only built-in implementation. Everything
above this layer talks to the :class:`ContainerRuntime` protocol, so tests
substitute an in-memory runtime.
"""

from __future__ import annotations

import json
import time
from typing import Protocol, runtime_checkable

from tenantbox.errors import ContainerNotFoundError
from tenantbox.logger import logger
from tenantbox.runtime._docker import parse_labels, parse_timestamp, run_docker
from tenantbox.types import ContainerInfo, ContainerSpec


@runtime_checkable
class ContainerRuntime(Protocol):
    """Runtime contract used by the lifecycle manager and execution channel."""

    name: str
    cli: str

    async def ensure_running(self) -> None: ...
    async def ensure_image(self, image: str) -> None: ...
    async def create_volume(self, name: str, labels: dict[str, str]) -> None: ...
    async def remove_volume(self, name: str) -> None: ...
    async def create_container(self, spec: ContainerSpec) -> str: ...
    async def start_container(self, name: str) -> None: ...
    async def stop_container(self, name: str, *, timeout: int) -> None: ...
    async def remove_container(self, name: str) -> None: ...
    async def inspect_container(self, name: str) -> ContainerInfo | None: ...
    async def list_containers(self, prefix: str) -> list[ContainerInfo]: ...

    def exec_argv(
        self,
        container: str,
        command: list[str],
        *,
        tty: bool,
        interactive: bool,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> list[str]: ...


class DockerRuntime:
    """Docker CLI implementation of :class:`ContainerRuntime`.

    Not-found conditions surface as ContainerNotFoundError /
    VolumeNotFoundError; callers decide whether "already absent" is fine.
    """

    name = "docker"

    def __init__(
        self,
        cli: str = "docker",
        *,
        command_timeout: int = 30,
        pull_timeout: int = 300,
    ) -> None:
        self.cli = cli
        self._timeout = command_timeout
        self._pull_timeout = pull_timeout

    async def _run(
        self,
        *args: str,
        check: bool = True,
        timeout: int | None = None,
        env: dict[str, str] | None = None,
    ):
        return await run_docker(
            *args, cli=self.cli, check=check, timeout=timeout or self._timeout, env=env
        )

    async def ensure_running(self) -> None:
        await self._run("info")
        logger.debug("Container runtime is running", runtime=self.name)

    async def ensure_image(self, image: str) -> None:
        """Pull an image if not already present locally."""
        result = await self._run("image", "inspect", image, check=False)
        if result.returncode == 0:
            return
        logger.info("Pulling container image (first run may take a minute)", image=image)
        await self._run("pull", image, timeout=self._pull_timeout)
        logger.info("Container image pulled", image=image)

    async def create_volume(self, name: str, labels: dict[str, str]) -> None:
        # `volume create` is a no-op for an existing volume
        label_args = [arg for k, v in labels.items() for arg in ("--label", f"{k}={v}")]
        await self._run("volume", "create", *label_args, name)

    async def remove_volume(self, name: str) -> None:
        await self._run("volume", "rm", name)

    async def create_container(self, spec: ContainerSpec) -> str:
        args = [
            "create",
            "--name",
            spec.name,
            "--workdir",
            spec.workdir,
            "--tty",
            "--stop-timeout",
            str(spec.stop_timeout),
            "--volume",
            f"{spec.volume}:{spec.volume_mount}",
        ]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        for key in spec.env:
            args += ["--env", key]
        args += [spec.image, *spec.command]
        result = await self._run(*args, env=spec.env)
        return result.stdout.strip()

    async def start_container(self, name: str) -> None:
        await self._run("start", name)

    async def stop_container(self, name: str, *, timeout: int = 3) -> None:
        await self._run("stop", "-t", str(timeout), name, timeout=self._timeout + timeout)

    async def remove_container(self, name: str) -> None:
        await self._run("rm", "-f", name)

    async def inspect_container(self, name: str) -> ContainerInfo | None:
        start = time.monotonic()
        try:
            result = await self._run(
                "container", "inspect", "--format", "{{json .}}", name
            )
        except ContainerNotFoundError:
            return None
        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > 500:
            logger.warning("Slow container inspect", container=name, elapsed_ms=round(elapsed_ms))

        data = json.loads(result.stdout)
        state = data.get("State") or {}
        return ContainerInfo(
            id=data.get("Id", ""),
            name=data.get("Name", "").lstrip("/"),
            running=bool(state.get("Running")),
            state=state.get("Status", ""),
            labels=parse_labels((data.get("Config") or {}).get("Labels")),
            created_at=parse_timestamp(data.get("Created")),
        )

    async def list_containers(self, prefix: str) -> list[ContainerInfo]:
        """All containers (any state) whose name starts with ``prefix``."""
        result = await self._run(
            "ps", "-a", "--no-trunc", "--filter", f"name=^{prefix}", "--format", "{{json .}}"
        )
        containers: list[ContainerInfo] = []
        for line in result.stdout.strip().splitlines():
            if not line:
                continue
            c = json.loads(line)
            name = c.get("Names", "")
            # the name filter is a substring regex; enforce the prefix here
            if not name.startswith(prefix):
                continue
            state = c.get("State", "")
            containers.append(
                ContainerInfo(
                    id=c.get("ID", ""),
                    name=name,
                    running=state == "running",
                    state=state,
                    labels=parse_labels(c.get("Labels")),
                    created_at=parse_timestamp(c.get("CreatedAt")),
                )
            )
        return containers

    def exec_argv(
        self,
        container: str,
        command: list[str],
        *,
        tty: bool,
        interactive: bool,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> list[str]:
        argv = [self.cli, "exec"]
        if interactive:
            argv.append("-i")
        if tty:
            argv.append("-t")
        if workdir:
            argv += ["-w", workdir]
        # names only; values come from the CLI process environment so
        # tokens never appear in the host process list
        for key in env or {}:
            argv += ["-e", key]
        return [*argv, container, *command]


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_runtime: ContainerRuntime | None = None


def get_runtime() -> ContainerRuntime:
    """Lazy cached runtime built from settings."""
    global _runtime  # noqa: PLW0603
    if _runtime is None:
        from tenantbox.config import get_settings

        s = get_settings()
        _runtime = DockerRuntime(
            s.runtime.cli,
            command_timeout=s.runtime.command_timeout,
            pull_timeout=s.runtime.pull_timeout,
        )
    return _runtime
