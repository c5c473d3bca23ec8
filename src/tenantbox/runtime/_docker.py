"""Docker CLI subprocess wrappers and error classification.

All public functions are async so they don't block the event loop. The
underlying subprocess calls run in a thread via ``asyncio.to_thread``.
Every failed call is turned into a typed error by
:func:`classify_docker_error`, so callers only ever see the taxonomy in
:mod:`tenantbox.errors`.
"""

from __future__ import annotations

import asyncio
import os
import re
import subprocess
from datetime import UTC, datetime

from tenantbox.errors import (
    ContainerConflictError,
    ContainerNotFoundError,
    OrchestratorError,
    PermanentConfigError,
    RuntimeCommandError,
    TransientInfraError,
    VolumeNotFoundError,
)

# Lower-cased stderr fragments. Order matters: not-found and conflict are
# checked before the broader buckets.
_TRANSIENT_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "server misbehaving",
    "temporary failure",
    "too many requests",
    "toomanyrequests",
    "service unavailable",
    "502 bad gateway",
)
_PERMANENT_MARKERS = (
    "no such image",
    "pull access denied",
    "manifest unknown",
    "repository does not exist",
    "invalid reference format",
    "invalid mount config",
    "invalid volume specification",
    "invalid argument",
    "unknown flag",
    "unknown shorthand flag",
    "permission denied while trying to connect",
)


def classify_docker_error(stderr: str, *, action: str) -> OrchestratorError:
    """Map a failed docker CLI call's stderr onto the error taxonomy."""
    text = stderr.strip()
    lowered = text.lower()
    message = f"docker {action} failed: {text or 'no output'}"

    if "no such container" in lowered:
        return ContainerNotFoundError(message)
    if "no such volume" in lowered:
        return VolumeNotFoundError(message)
    if "is already in use" in lowered:
        return ContainerConflictError(message)
    if any(m in lowered for m in _PERMANENT_MARKERS):
        return PermanentConfigError(message)
    if any(m in lowered for m in _TRANSIENT_MARKERS):
        return TransientInfraError(message)
    return RuntimeCommandError(message, stderr=text)


def _run_docker_sync(
    cli: str,
    *args: str,
    timeout: int,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a container CLI command (blocking, internal only)."""
    return subprocess.run(
        [cli, *args],
        env={**os.environ, **env} if env else None,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


async def run_docker(
    *args: str,
    cli: str = "docker",
    check: bool = True,
    timeout: int = 30,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a container CLI command without blocking the event loop.

    With ``check`` a non-zero exit raises the classified error. A CLI call
    that outlives ``timeout`` is transient; a missing CLI binary is a
    permanent configuration problem. ``env`` extends the CLI's own
    environment (used for values referenced by name in ``--env KEY``).
    """
    action = " ".join(args[:2])
    try:
        result = await asyncio.to_thread(_run_docker_sync, cli, *args, timeout=timeout, env=env)
    except subprocess.TimeoutExpired as exc:
        msg = f"{cli} {action} timed out after {timeout}s"
        raise TransientInfraError(msg) from exc
    except FileNotFoundError as exc:
        msg = f"Container CLI {cli!r} not found on PATH"
        raise PermanentConfigError(msg) from exc

    if check and result.returncode != 0:
        raise classify_docker_error(result.stderr or result.stdout, action=action)
    return result


def parse_labels(raw: str | dict[str, str] | None) -> dict[str, str]:
    """Labels come back as a dict from ``inspect`` and as ``k=v,k=v`` from ``ps``."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    labels: dict[str, str] = {}
    for part in raw.split(","):
        key, sep, value = part.partition("=")
        if sep:
            labels[key.strip()] = value.strip()
    return labels


_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse ``inspect`` (RFC 3339, nanoseconds) or ``ps`` (``... +0000 UTC``) times."""
    if not raw:
        return None
    text = raw.strip()
    if text.endswith(" UTC"):
        text = text[: -len(" UTC")]
        try:
            return datetime.strptime(text, "%Y-%m-%d %H:%M:%S %z")
        except ValueError:
            return None
    text = _FRACTION_RE.sub(r".\1", text).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
