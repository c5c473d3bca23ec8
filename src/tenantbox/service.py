"""Front-end facade: one method per user command, each returning an Outcome.

This is the only place errors become user-facing. Components raise typed
:class:`~tenantbox.errors.OrchestratorError` subclasses; here they are turned
into an :class:`~tenantbox.types.Outcome` keyed on ``kind``. Anything
unexpected is logged with its traceback and reported as an internal error, so
one tenant's failure never takes the process down.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from tenantbox import repos
from tenantbox.auth.codes import looks_like_auth_code
from tenantbox.auth.device_flow import DeviceFlowClient
from tenantbox.auth.interactive import InteractiveAuthenticator
from tenantbox.config import get_settings
from tenantbox.credentials import ASSISTANT_PROVIDER, SOURCE_CONTROL_PROVIDER
from tenantbox.credentials.store import CredentialStore
from tenantbox.errors import (
    ConflictError,
    CredentialNotFoundError,
    OrchestratorError,
)
from tenantbox.execution.channel import ExecutionChannel
from tenantbox.logger import logger
from tenantbox.runtime.runtime import ContainerRuntime, get_runtime
from tenantbox.sessions.manager import SessionManager
from tenantbox.types import AuthState, Credential, DeviceAuthorization, Outcome, validate_tenant_id
from tenantbox.utils import create_background_task, retry_transient

_KIND_PREFIX = {
    "transient_infra": "Temporary infrastructure problem, please retry",
    "permanent_config": "Configuration error",
    "protocol_violation": "Unexpected response",
    "user_timeout": "Still waiting",
    "conflict": "Already in progress",
    "not_found": "Not found",
    "exec": "Command failed",
    "auth": "Authentication failed",
    "runtime": "Container runtime error",
}


def _failure(exc: OrchestratorError) -> Outcome:
    prefix = _KIND_PREFIX.get(exc.kind, "Error")
    return Outcome(ok=False, message=f"{prefix}: {exc}", error_kind=exc.kind)


@dataclass
class _DevicePoll:
    """Source-control device flow for one tenant; ``task`` is None while starting."""

    device_code: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)  # type: ignore[type-arg]

    @property
    def active(self) -> bool:
        return self.task is None or not self.task.done()


class TenantService:
    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        channel: ExecutionChannel | None = None,
        store: CredentialStore | None = None,
        device_client: DeviceFlowClient | None = None,
    ) -> None:
        self._settings = get_settings()
        self._runtime = runtime or get_runtime()
        self._channel = channel or ExecutionChannel(self._runtime)
        self.store = store or CredentialStore()
        self.sessions = SessionManager(self._runtime, self._channel, self.store)
        self.assistant_auth = InteractiveAuthenticator(self._channel, self.store)
        self._device = device_client or DeviceFlowClient()
        self._device_polls: dict[str, _DevicePoll] = {}
        self._device_errors: dict[str, str] = {}

    async def _guard(
        self, operation: str, tenant_id: str, call: Callable[[], Awaitable[Outcome]]
    ) -> Outcome:
        try:
            return await call()
        except OrchestratorError as exc:
            logger.warning(
                "Operation failed",
                operation=operation,
                tenant=tenant_id,
                kind=exc.kind,
                err=str(exc),
            )
            return _failure(exc)
        except ValueError as exc:
            return Outcome(ok=False, message=str(exc), error_kind="invalid_input")
        except TimeoutError:
            logger.warning("Operation timed out", operation=operation, tenant=tenant_id)
            return Outcome(ok=False, message="Operation timed out", error_kind="user_timeout")
        except Exception:
            logger.exception("Unexpected error", operation=operation, tenant=tenant_id)
            return Outcome(ok=False, message="Internal error, see logs", error_kind="internal")

    # --- sessions ------------------------------------------------------------

    async def start_session(self, tenant_id: str) -> Outcome:
        async def _do() -> Outcome:
            session = await self.sessions.create_session(tenant_id)
            return Outcome(
                ok=True,
                message=f"Session ready in container {session.container_name}",
                state=session.status.value,
            )

        return await self._guard("start_session", tenant_id, _do)

    async def clear_session(self, tenant_id: str) -> Outcome:
        """Tear down the container and its volume. Stored credentials are kept."""

        async def _do() -> Outcome:
            validate_tenant_id(tenant_id)
            await self.assistant_auth.forget(tenant_id)
            await self._cancel_device_poll(tenant_id)
            removed = await self.sessions.remove_session(tenant_id, remove_volume=True)
            if not removed:
                return Outcome(
                    ok=False,
                    message="Session could not be fully removed, see logs",
                    error_kind="runtime",
                )
            return Outcome(ok=True, message="Session cleared; stored credentials were kept")

        return await self._guard("clear_session", tenant_id, _do)

    # --- assistant login -----------------------------------------------------

    async def authenticate_assistant(self, tenant_id: str) -> Outcome:
        async def _do() -> Outcome:
            session = self.sessions.require_session(tenant_id)
            credential = await self.store.find(tenant_id, ASSISTANT_PROVIDER)
            if credential is not None and not credential.is_expired():
                return Outcome(
                    ok=True,
                    message="Already authenticated",
                    state=AuthState.LOGIN_SUCCESSFUL.name.lower(),
                )
            auth = await self.assistant_auth.start(tenant_id, session.container_name)
            return Outcome(
                ok=True,
                message="Open the link, sign in, then send the code you are shown",
                url=auth.url,
                state=auth.state.name.lower(),
            )

        return await self._guard("authenticate_assistant", tenant_id, _do)

    async def submit_auth_code(self, tenant_id: str, code: str) -> Outcome:
        async def _do() -> Outcome:
            if not looks_like_auth_code(code):
                return Outcome(
                    ok=False,
                    message="That does not look like an authorization code",
                    error_kind="invalid_input",
                )
            auth = await self.assistant_auth.submit_code(tenant_id, code)
            message = "Login successful"
            if auth.error:
                message = f"Login successful, but credentials could not be saved: {auth.error}"
            return Outcome(ok=True, message=message, state=auth.state.name.lower())

        return await self._guard("submit_auth_code", tenant_id, _do)

    # --- source control ------------------------------------------------------

    async def authenticate_source_control(self, tenant_id: str) -> Outcome:
        """Start a device flow; the token is collected by a background poll."""

        async def _do() -> Outcome:
            validate_tenant_id(tenant_id)
            current = self._device_polls.get(tenant_id)
            if current is not None and current.active:
                raise ConflictError("A GitHub authorization is already in progress")

            poll = _DevicePoll()
            self._device_polls[tenant_id] = poll
            self._device_errors.pop(tenant_id, None)
            try:
                authorization = await self._device.start_device_auth()
            except BaseException:
                self._device_polls.pop(tenant_id, None)
                raise

            poll.device_code = authorization.device_code
            poll.task = create_background_task(
                self._finish_device_flow(tenant_id, authorization),
                name=f"device-flow-{tenant_id}",
            )
            return Outcome(
                ok=True,
                message=(
                    f"Open {authorization.verification_uri} and enter the code "
                    f"{authorization.user_code}"
                ),
                url=authorization.verification_uri_complete or authorization.verification_uri,
                user_code=authorization.user_code,
                state="pending",
            )

        return await self._guard("authenticate_source_control", tenant_id, _do)

    async def _finish_device_flow(
        self, tenant_id: str, authorization: DeviceAuthorization
    ) -> None:
        try:
            await self._store_device_grant(tenant_id, authorization)
        except OrchestratorError as exc:
            logger.warning("GitHub authorization failed", tenant=tenant_id, err=str(exc))
            self._device_errors[tenant_id] = str(exc)
        except Exception:
            logger.exception("GitHub authorization crashed", tenant=tenant_id)
            self._device_errors[tenant_id] = "internal error, see logs"
        finally:
            poll = self._device_polls.get(tenant_id)
            if poll is not None and poll.device_code == authorization.device_code:
                del self._device_polls[tenant_id]

    async def _store_device_grant(
        self, tenant_id: str, authorization: DeviceAuthorization
    ) -> None:
        grant = await self._device.poll_for_token(authorization.device_code)
        subject = await self._device.fetch_subject(grant.access_token)
        expires_at = None
        if grant.expires_in:
            expires_at = datetime.now(UTC) + timedelta(seconds=grant.expires_in)
        credential = Credential(
            tenant_id=tenant_id,
            provider=SOURCE_CONTROL_PROVIDER,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=expires_at,
            scopes=grant.scopes,
            subject=subject,
        )
        await self.store.put(tenant_id, SOURCE_CONTROL_PROVIDER, credential)
        logger.info("GitHub authorization complete", tenant=tenant_id, subject=subject or None)

    async def _cancel_device_poll(self, tenant_id: str) -> None:
        poll = self._device_polls.pop(tenant_id, None)
        if poll is None:
            return
        if poll.device_code is not None:
            self._device.cancel(poll.device_code)
        if poll.task is not None and not poll.task.done():
            poll.task.cancel()
            await asyncio.gather(poll.task, return_exceptions=True)

    async def _github_token(self, tenant_id: str) -> str | Outcome:
        """The tenant's usable GitHub token, or the Outcome explaining why not."""
        try:
            credential = await self.store.get(tenant_id, SOURCE_CONTROL_PROVIDER)
        except CredentialNotFoundError:
            return Outcome(
                ok=False,
                message="Authenticate with GitHub first",
                error_kind="not_found",
            )
        if credential.is_expired():
            return Outcome(
                ok=False,
                message="The GitHub token has expired, authenticate again",
                error_kind="auth",
            )
        return credential.access_token.get_secret_value()

    async def clone_repository(
        self, tenant_id: str, owner_repo: str, target_dir: str | None = None
    ) -> Outcome:
        async def _do() -> Outcome:
            session = self.sessions.require_session(tenant_id)
            token = await self._github_token(tenant_id)
            if isinstance(token, Outcome):
                return token
            result = await repos.clone_repository(
                self._channel,
                session.container_name,
                owner_repo,
                token=token,
                target_dir=target_dir,
                workdir=self._settings.container.workdir,
                timeout=self._settings.repos.clone_timeout,
            )
            return Outcome(
                ok=result.success,
                message=result.message,
                error_kind=None if result.success else "clone_failed",
            )

        return await self._guard("clone_repository", tenant_id, _do)

    async def list_repositories(self, tenant_id: str, limit: int | None = None) -> Outcome:
        async def _do() -> Outcome:
            session = self.sessions.require_session(tenant_id)
            token = await self._github_token(tenant_id)
            if isinstance(token, Outcome):
                return token
            entries = await repos.list_repositories(
                self._channel,
                session.container_name,
                token=token,
                limit=limit or self._settings.repos.list_limit,
                timeout=self._settings.repos.gh_timeout,
            )
            if not entries:
                return Outcome(
                    ok=True, message="No repositories accessible with the current login"
                )
            lines = [
                f"- {e.name} ({e.url})" + (f": {e.description}" if e.description else "")
                for e in entries
            ]
            return Outcome(ok=True, message="\n".join(lines))

        return await self._guard("list_repositories", tenant_id, _do)

    async def github_status(self, tenant_id: str) -> Outcome:
        """Ask GitHub, from inside the container, whether the login works."""

        async def _do() -> Outcome:
            session = self.sessions.require_session(tenant_id)
            credential = await self.store.find(tenant_id, SOURCE_CONTROL_PROVIDER)
            token = None
            if credential is not None and not credential.is_expired():
                token = credential.access_token.get_secret_value()
            status = await repos.github_auth_status(
                self._channel,
                session.container_name,
                token=token,
                timeout=self._settings.repos.gh_timeout,
            )
            if not status.authenticated:
                return Outcome(
                    ok=True, message="GitHub: not authenticated", state="not_authenticated"
                )
            who = f" as {status.username}" if status.username else ""
            return Outcome(ok=True, message=f"GitHub: authenticated{who}", state="authenticated")

        return await self._guard("github_status", tenant_id, _do)

    async def update_assistant(self, tenant_id: str) -> Outcome:
        """Run the assistant CLI's self-update in the tenant's container."""

        async def _do() -> Outcome:
            session = self.sessions.require_session(tenant_id)
            cfg = self._settings.assistant_auth
            logger.info("Updating assistant CLI", tenant=tenant_id)
            result = await self._channel.run(
                session.container_name, list(cfg.update_command), timeout=cfg.update_timeout
            )
            output = result.output.strip()
            if not result.ok:
                logger.warning(
                    "Assistant CLI update failed", tenant=tenant_id, exit_code=result.exit_code
                )
                return Outcome(
                    ok=False,
                    message=f"Assistant CLI update failed: {output or 'no output'}",
                    error_kind="exec",
                )
            return Outcome(ok=True, message=f"Assistant CLI updated\n{output}".rstrip())

        return await self._guard("update_assistant", tenant_id, _do)

    # --- status / logout -----------------------------------------------------

    async def auth_status(self, tenant_id: str) -> Outcome:
        async def _do() -> Outcome:
            stored = await self.store.list(tenant_id)
            lines = [f"Stored credentials: {', '.join(stored) if stored else 'none'}"]
            auth = self.assistant_auth.status(tenant_id)
            state = None
            url = None
            if auth is not None:
                state = auth.state.name.lower()
                line = f"Assistant login: {state}"
                if auth.in_grace:
                    line += " (grace period)"
                if auth.error:
                    line += f" ({auth.error})"
                lines.append(line)
                if not auth.is_terminal:
                    url = auth.url
            poll = self._device_polls.get(tenant_id)
            if poll is not None and poll.active:
                lines.append("GitHub authorization: pending")
            elif tenant_id in self._device_errors:
                lines.append(f"GitHub authorization: failed ({self._device_errors[tenant_id]})")
            return Outcome(ok=True, message="\n".join(lines), state=state, url=url)

        return await self._guard("auth_status", tenant_id, _do)

    async def logout(self, tenant_id: str, provider: str | None = None) -> Outcome:
        async def _do() -> Outcome:
            providers = [provider] if provider else await self.store.list(tenant_id)
            if provider in (None, ASSISTANT_PROVIDER):
                await self.assistant_auth.forget(tenant_id)
                await self._remove_assistant_file(tenant_id)
            if provider in (None, SOURCE_CONTROL_PROVIDER):
                await self._cancel_device_poll(tenant_id)
            deleted = [p for p in providers if await self.store.delete(tenant_id, p)]
            if not deleted:
                return Outcome(ok=True, message="No stored credentials")
            return Outcome(ok=True, message=f"Logged out of {', '.join(deleted)}")

        return await self._guard("logout", tenant_id, _do)

    async def _remove_assistant_file(self, tenant_id: str) -> None:
        session = self.sessions.get_session(tenant_id)
        if session is None:
            return
        try:
            await self._channel.run(
                session.container_name,
                ["rm", "-f", self._settings.assistant_auth.credentials_path],
            )
        except (OrchestratorError, TimeoutError) as exc:
            logger.warning(
                "Could not remove credential file from container", tenant=tenant_id, err=str(exc)
            )

    # --- process lifetime ----------------------------------------------------

    async def start(self) -> None:
        """Check the runtime, rebuild the session registry, warm the image."""
        await self._runtime.ensure_running()
        await self.sessions.reconcile()
        if self._settings.container.pull_on_start:
            create_background_task(self._pull_image(), name="image-pull")

    async def _pull_image(self) -> None:
        image = self._settings.container.image
        try:
            await retry_transient(
                lambda: self._runtime.ensure_image(image),
                what=f"pull {image}",
                max_retries=self._settings.runtime.max_retries,
                base_delay=self._settings.runtime.base_retry_seconds,
            )
        except OrchestratorError as exc:
            # sessions pull on demand; surfacing happens on the first create
            logger.warning("Image pre-pull failed", image=image, err=str(exc))

    async def shutdown(self) -> None:
        logger.info("Shutting down", sessions=len(self.sessions.list_sessions()))
        await self.assistant_auth.abort_all()
        for tenant_id in list(self._device_polls):
            await self._cancel_device_poll(tenant_id)
        await self.sessions.shutdown()
        await self._device.close()

