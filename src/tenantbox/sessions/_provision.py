"""First-boot setup of a session container.

Auth state of the in-container tools lives on the tenant's volume and is
symlinked into the places the tools look for it, so a recreated container
picks up where the last one left off.
"""

from __future__ import annotations

import asyncio
import json
import shlex

from tenantbox.config import Settings
from tenantbox.credentials.formats import render_assistant_credentials
from tenantbox.errors import OrchestratorError, TransientInfraError
from tenantbox.execution.channel import ExecutionChannel
from tenantbox.logger import logger
from tenantbox.types import Credential

ASSISTANT_SETTINGS = {
    "permissions": {
        "defaultMode": "acceptEdits",
        "allow": ["Edit", "Read", "Write", "Bash", "Glob", "Grep", "LS", "MultiEdit", "Task"],
    }
}


async def wait_until_ready(
    channel: ExecutionChannel,
    container: str,
    *,
    attempts: int,
    interval: float,
) -> None:
    """Run ``echo ready`` until the container answers."""
    for attempt in range(1, attempts + 1):
        try:
            result = await channel.run(container, ["echo", "ready"], timeout=max(interval, 5.0))
            if result.ok and "ready" in result.output:
                logger.debug("Container ready", container=container, attempt=attempt)
                return
        except (OrchestratorError, TimeoutError) as exc:
            logger.debug(
                "Readiness check failed", container=container, attempt=attempt, err=str(exc)
            )
        await asyncio.sleep(interval)
    msg = f"Container {container} did not become ready after {attempts} attempts"
    raise TransientInfraError(msg)


def _setup_script(s: Settings) -> str:
    mount = s.container.volume_mount
    q = shlex.quote
    onboarding = q(json.dumps({"hasCompletedOnboarding": True}))
    return "\n".join(
        [
            "set -e",
            f"mkdir -p {q(mount)}/claude {q(mount)}/gh /root/.config",
            f"[ -f {q(mount)}/claude.json ] || echo {onboarding} > {q(mount)}/claude.json",
            "rm -rf /root/.claude /root/.config/gh /root/.claude.json",
            f"ln -sf {q(mount)}/claude /root/.claude",
            f"ln -sf {q(mount)}/gh /root/.config/gh",
            f"ln -sf {q(mount)}/claude.json /root/.claude.json",
            f"git config --global user.email {q(s.container.git_user_email)}",
            f"git config --global user.name {q(s.container.git_user_name)}",
        ]
    )


async def provision_container(channel: ExecutionChannel, container: str, s: Settings) -> None:
    """Volume symlinks, assistant settings, git identity. Raises on failure."""
    await channel.run(container, ["sh", "-c", _setup_script(s)], check=True)
    settings_path = f"{s.container.volume_mount}/claude/settings.json"
    await channel.run(
        container,
        ["sh", "-c", f"cat > {shlex.quote(settings_path)}"],
        stdin_data=json.dumps(ASSISTANT_SETTINGS, indent=2),
        check=True,
    )
    logger.info("Container provisioned", container=container)


async def restore_assistant_credential(
    channel: ExecutionChannel,
    container: str,
    credential: Credential,
    path: str,
) -> None:
    """Write a stored assistant credential back to where the CLI reads it."""
    quoted = shlex.quote(path)
    await channel.run(
        container,
        ["sh", "-c", f"umask 077 && mkdir -p \"$(dirname {quoted})\" && cat > {quoted}"],
        stdin_data=render_assistant_credentials(credential),
        check=True,
    )
    logger.info("Assistant credential restored", container=container, tenant=credential.tenant_id)
