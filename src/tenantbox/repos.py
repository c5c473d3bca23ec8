"""GitHub operations inside a session container via the ``gh`` CLI.

The token, when there is one, travels only in the exec environment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from tenantbox.errors import AuthError, CommandFailedError
from tenantbox.execution.channel import ExecutionChannel
from tenantbox.logger import logger

_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_STATUS_USER_RE = re.compile(r"Logged in to \S+ (?:as|account) (\S+)")
_AUTH_REQUIRED_MARKERS = ("authentication required", "not authenticated", "gh auth login")


@dataclass
class CloneResult:
    success: bool
    repository: str
    target_directory: str
    message: str


@dataclass
class RepoEntry:
    name: str
    description: str = ""

    @property
    def url(self) -> str:
        return f"https://github.com/{self.name}"


@dataclass
class GithubAuthStatus:
    authenticated: bool
    username: str | None = None


def validate_repository(owner_repo: str) -> str:
    owner_repo = owner_repo.strip().removesuffix(".git")
    if not _REPO_RE.match(owner_repo) or ".." in owner_repo.split("/"):
        msg = f"Repository must look like owner/repo, got {owner_repo!r}"
        raise ValueError(msg)
    return owner_repo


def validate_target_dir(target_dir: str) -> str:
    """Relative path inside the workspace; no parent references or option-like names."""
    path = PurePosixPath(target_dir)
    if (
        not target_dir.strip()
        or path.is_absolute()
        or ".." in path.parts
        or target_dir.startswith("-")
    ):
        msg = f"Invalid target directory: {target_dir!r}"
        raise ValueError(msg)
    return str(path)


def analyze_clone_failure(output: str) -> str:
    """Turn ``gh repo clone`` output into something a user can act on."""
    lower = output.lower()
    if "not found" in lower:
        return "Repository not found. Check the repository name and your access permissions."
    if "permission denied" in lower or "authentication" in lower:
        return (
            "Permission denied. Make sure you are authenticated with GitHub "
            "and have access to this repository."
        )
    if "already exists" in lower:
        return (
            "Directory already exists. Choose a different target directory "
            "or remove the existing one."
        )
    if "network" in lower or "connection" in lower:
        return "Network error. Check the connection and try again."
    if not output.strip():
        return (
            "Clone failed with no error message. The repository may not exist "
            "or you may not have access."
        )
    return f"Clone failed: {output.strip()}"


async def clone_repository(
    channel: ExecutionChannel,
    container: str,
    owner_repo: str,
    *,
    token: str,
    target_dir: str | None = None,
    workdir: str = "/workspace",
    timeout: float = 300.0,
) -> CloneResult:
    """Clone ``owner/repo`` into ``workdir``. The token travels only in the exec env."""
    repository = validate_repository(owner_repo)
    command = ["gh", "repo", "clone", repository]
    if target_dir is not None:
        target = validate_target_dir(target_dir)
        command.append(target)
    else:
        target = repository.split("/")[-1]

    logger.info("Cloning repository", container=container, repository=repository)
    result = await channel.run(
        container,
        command,
        workdir=workdir,
        env={"GH_TOKEN": token},
        timeout=timeout,
    )
    if not result.ok:
        message = analyze_clone_failure(result.output)
        logger.warning(
            "Repository clone failed",
            container=container,
            repository=repository,
            exit_code=result.exit_code,
        )
        return CloneResult(False, repository, target, message)

    logger.info("Repository cloned", container=container, repository=repository)
    return CloneResult(True, repository, target, f"Cloned {repository} into {workdir}/{target}")


def parse_repo_list(output: str) -> list[RepoEntry]:
    """Parse ``gh repo list`` output: tab-separated when piped, space-separated otherwise."""
    entries: list[RepoEntry] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        if "\t" in line:
            fields = line.split("\t")
            name, description = fields[0].strip(), fields[1].strip()
        else:
            name, _, description = line.strip().partition(" ")
            description = " ".join(description.split())
        entries.append(RepoEntry(name, description))
    return entries


async def list_repositories(
    channel: ExecutionChannel,
    container: str,
    *,
    token: str,
    limit: int = 50,
    timeout: float = 60.0,
) -> list[RepoEntry]:
    """Repositories the token's account can see, newest first as ``gh`` orders them.

    Raises AuthError when GitHub rejects the token and CommandFailedError for
    anything else ``gh`` reports.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")
    command = ["gh", "repo", "list", "--limit", str(limit)]
    result = await channel.run(container, command, env={"GH_TOKEN": token}, timeout=timeout)
    if not result.ok:
        lower = result.output.lower()
        if any(m in lower for m in _AUTH_REQUIRED_MARKERS):
            raise AuthError("GitHub rejected the stored token, authenticate again")
        raise CommandFailedError(command, result.exit_code, result.output)
    entries = parse_repo_list(result.output)
    logger.debug("Repositories listed", container=container, count=len(entries))
    return entries


def parse_status_username(output: str) -> str | None:
    for line in output.splitlines():
        match = _STATUS_USER_RE.search(line)
        if match:
            return match.group(1).strip("().,")
    return None


async def github_auth_status(
    channel: ExecutionChannel,
    container: str,
    *,
    token: str | None = None,
    timeout: float = 30.0,
) -> GithubAuthStatus:
    """Ask ``gh auth status`` whether the container can reach GitHub, and as whom.

    Without ``token`` the container's own login (or its GH_TOKEN) is checked.
    """
    env = {"GH_TOKEN": token} if token else None
    result = await channel.run(container, ["gh", "auth", "status"], env=env, timeout=timeout)
    if not result.ok:
        return GithubAuthStatus(authenticated=False)
    return GithubAuthStatus(authenticated=True, username=parse_status_username(result.output))
