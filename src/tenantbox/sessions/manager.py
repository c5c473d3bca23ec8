"""Container lifecycle per tenant.

Each tenant gets at most one container, ``<prefix><tenant>``, with a
persistent volume ``<prefix><tenant><suffix>`` mounted for tool auth state.
Names are deterministic, so the runtime itself is the source of truth: the
in-memory registry is rebuilt from it on startup and every create first
looks for an existing container.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from tenantbox.config import get_settings
from tenantbox.credentials import ASSISTANT_PROVIDER
from tenantbox.credentials.store import CredentialStore
from tenantbox.errors import (
    ContainerConflictError,
    ContainerNotFoundError,
    OrchestratorError,
    SessionNotFoundError,
    VolumeNotFoundError,
)
from tenantbox.execution.channel import ExecutionChannel
from tenantbox.logger import logger
from tenantbox.runtime.runtime import ContainerRuntime
from tenantbox.sessions._provision import (
    provision_container,
    restore_assistant_credential,
    wait_until_ready,
)
from tenantbox.sessions._registry import SessionRegistry
from tenantbox.types import (
    ContainerInfo,
    ContainerSpec,
    Session,
    SessionStatus,
    validate_tenant_id,
)
from tenantbox.utils import retry_transient

T = TypeVar("T")

LABEL_TENANT = "tenantbox.tenant"
LABEL_VOLUME = "tenantbox.volume"
LABEL_MANAGED = "tenantbox.managed"


class SessionManager:
    def __init__(
        self,
        runtime: ContainerRuntime,
        channel: ExecutionChannel,
        store: CredentialStore,
    ) -> None:
        self._settings = get_settings()
        self._runtime = runtime
        self._channel = channel
        self._store = store
        self._registry = SessionRegistry()

    # --- naming --------------------------------------------------------------

    def container_name(self, tenant_id: str) -> str:
        validate_tenant_id(tenant_id)
        return f"{self._settings.container.name_prefix}{tenant_id}"

    def volume_name(self, tenant_id: str) -> str:
        return f"{self.container_name(tenant_id)}{self._settings.container.volume_suffix}"

    # --- queries -------------------------------------------------------------

    def get_session(self, tenant_id: str) -> Session | None:
        return self._registry.get(tenant_id)

    def require_session(self, tenant_id: str) -> Session:
        """The tenant's running session, or SessionNotFoundError."""
        session = self._registry.get(tenant_id)
        if session is None or session.status is not SessionStatus.RUNNING:
            raise SessionNotFoundError(f"No running session for tenant {tenant_id}")
        return session

    def list_sessions(self) -> list[Session]:
        return self._registry.all()

    # --- lifecycle -----------------------------------------------------------

    async def _retry(self, op: Callable[[], Awaitable[T]], what: str) -> T:
        return await retry_transient(
            op,
            what=what,
            max_retries=self._settings.runtime.max_retries,
            base_delay=self._settings.runtime.base_retry_seconds,
        )

    async def create_session(self, tenant_id: str) -> Session:
        """Return the tenant's running session, creating or restarting it if needed.

        Idempotent: concurrent calls for one tenant serialize on its lock and
        all observe the same container.
        """
        name = self.container_name(tenant_id)
        async with self._registry.locks.hold(tenant_id):
            info = await self._retry(
                lambda: self._runtime.inspect_container(name), f"inspect {name}"
            )
            if info is not None and info.running:
                logger.debug("Session already running", tenant=tenant_id, container=name)
                return self._adopt(tenant_id, info)
            if info is not None:
                return await self._restart(tenant_id, info)
            return await self._create(tenant_id)

    def _adopt(self, tenant_id: str, info: ContainerInfo) -> Session:
        session = self._registry.get(tenant_id)
        if session is None or session.container_name != info.name:
            session = Session(
                tenant_id=tenant_id,
                container_id=info.id,
                container_name=info.name,
                volume_name=info.labels.get(LABEL_VOLUME) or self.volume_name(tenant_id),
                created_at=info.created_at or datetime.now(UTC),
            )
        session.container_id = info.id or session.container_id
        session.status = SessionStatus.RUNNING if info.running else SessionStatus.STOPPED
        self._registry.put(session)
        return session

    async def _restart(self, tenant_id: str, info: ContainerInfo) -> Session:
        logger.info("Restarting stopped session", tenant=tenant_id, container=info.name)
        await self._retry(lambda: self._runtime.start_container(info.name), f"start {info.name}")
        session = self._adopt(tenant_id, info)
        session.status = SessionStatus.RUNNING
        await self._prepare(session, provision=False)
        return session

    async def _create(self, tenant_id: str) -> Session:
        s = self._settings
        name = self.container_name(tenant_id)
        volume = self.volume_name(tenant_id)
        session = Session(
            tenant_id=tenant_id,
            container_id="",
            container_name=name,
            volume_name=volume,
            status=SessionStatus.CREATING,
        )
        self._registry.put(session)
        logger.info("Creating session", tenant=tenant_id, container=name, image=s.container.image)

        created = False
        try:
            await self._retry(
                lambda: self._runtime.ensure_image(s.container.image), f"pull {s.container.image}"
            )
            await self._retry(
                lambda: self._runtime.create_volume(
                    volume,
                    {
                        "created_by": "tenantbox",
                        "tenant": tenant_id,
                        "purpose": "authentication_persistence",
                    },
                ),
                f"volume create {volume}",
            )
            spec = ContainerSpec(
                name=name,
                image=s.container.image,
                volume=volume,
                volume_mount=s.container.volume_mount,
                workdir=s.container.workdir,
                command=list(s.container.command),
                env=self._container_env(),
                labels={LABEL_TENANT: tenant_id, LABEL_VOLUME: volume, LABEL_MANAGED: "true"},
                stop_timeout=s.container.stop_timeout,
            )
            try:
                session.container_id = await self._retry(
                    lambda: self._runtime.create_container(spec), f"create {name}"
                )
                created = True
            except ContainerConflictError:
                # someone else created it since our inspect; use theirs
                info = await self._runtime.inspect_container(name)
                if info is None:
                    raise
                logger.info("Adopting concurrently created container", tenant=tenant_id)
                if info.running:
                    return self._adopt(tenant_id, info)
                session.container_id = info.id

            await self._retry(lambda: self._runtime.start_container(name), f"start {name}")
            session.status = SessionStatus.RUNNING
            await self._prepare(session, provision=s.container.provision)
        except Exception:
            self._registry.pop(tenant_id)
            if created:
                await self._discard_container(name)
            raise

        logger.info("Session created", tenant=tenant_id, container=name)
        return session

    def _container_env(self) -> dict[str, str]:
        env = dict(self._settings.container.env)
        if self._settings.secrets.gh_token is not None:
            env["GH_TOKEN"] = self._settings.secrets.gh_token.get_secret_value()
        return env

    async def _prepare(self, session: Session, *, provision: bool) -> None:
        cfg = self._settings.container
        await wait_until_ready(
            self._channel,
            session.container_name,
            attempts=cfg.ready_attempts,
            interval=cfg.ready_interval,
        )
        if provision:
            await provision_container(self._channel, session.container_name, self._settings)
        await self._restore_credentials(session)

    async def _restore_credentials(self, session: Session) -> None:
        credential = await self._store.find(session.tenant_id, ASSISTANT_PROVIDER)
        if credential is None or credential.is_expired():
            return
        try:
            await restore_assistant_credential(
                self._channel,
                session.container_name,
                credential,
                self._settings.assistant_auth.credentials_path,
            )
        except (OrchestratorError, TimeoutError) as exc:
            # the session is usable without it; the user can log in again
            logger.warning(
                "Could not restore assistant credential",
                tenant=session.tenant_id,
                err=str(exc),
            )

    async def stop_session(self, tenant_id: str) -> None:
        """Stop the tenant's container. Already stopped or absent is success."""
        name = self.container_name(tenant_id)
        async with self._registry.locks.hold(tenant_id):
            try:
                await self._retry(
                    lambda: self._runtime.stop_container(
                        name, timeout=self._settings.container.stop_timeout
                    ),
                    f"stop {name}",
                )
            except ContainerNotFoundError:
                logger.debug("Container already absent", tenant=tenant_id, container=name)
            session = self._registry.get(tenant_id)
            if session is not None:
                session.status = SessionStatus.STOPPED
        logger.info("Session stopped", tenant=tenant_id)

    async def remove_session(self, tenant_id: str, *, remove_volume: bool = False) -> bool:
        """Remove the container (and optionally its volume). Absent is success.

        Returns False if the runtime refused; the failure is logged, not retried
        beyond the transient budget, and the session stays registered.
        """
        name = self.container_name(tenant_id)
        volume = self.volume_name(tenant_id)
        async with self._registry.locks.hold(tenant_id):
            removed = await self._discard_container(name)
            if not removed:
                return False
            session = self._registry.pop(tenant_id)
            if session is not None:
                session.status = SessionStatus.REMOVED
            if remove_volume:
                removed = await self._discard_volume(volume)
        logger.info("Session removed", tenant=tenant_id, volume_removed=remove_volume and removed)
        return removed

    async def _discard_container(self, name: str) -> bool:
        try:
            await self._retry(lambda: self._runtime.remove_container(name), f"rm {name}")
        except ContainerNotFoundError:
            logger.debug("Container already absent", container=name)
        except OrchestratorError as exc:
            logger.warning("Container removal failed", container=name, err=str(exc))
            return False
        return True

    async def _discard_volume(self, volume: str) -> bool:
        try:
            await self._retry(lambda: self._runtime.remove_volume(volume), f"volume rm {volume}")
        except VolumeNotFoundError:
            logger.debug("Volume already absent", volume=volume)
        except OrchestratorError as exc:
            logger.warning("Volume removal failed", volume=volume, err=str(exc))
            return False
        return True

    # --- process lifetime ----------------------------------------------------

    async def reconcile(self) -> list[Session]:
        """Rebuild the registry from the containers the runtime actually has."""
        prefix = self._settings.container.name_prefix
        containers = await self._retry(
            lambda: self._runtime.list_containers(prefix), "list containers"
        )
        sessions: list[Session] = []
        for info in containers:
            tenant_id = info.labels.get(LABEL_TENANT) or info.name[len(prefix) :]
            try:
                expected = self.container_name(tenant_id)
            except ValueError:
                logger.warning("Ignoring container with unexpected name", container=info.name)
                continue
            if expected != info.name:
                logger.warning(
                    "Ignoring container whose label does not match its name",
                    container=info.name,
                    tenant=tenant_id,
                )
                continue
            sessions.append(
                Session(
                    tenant_id=tenant_id,
                    container_id=info.id,
                    container_name=info.name,
                    volume_name=info.labels.get(LABEL_VOLUME) or self.volume_name(tenant_id),
                    status=SessionStatus.RUNNING if info.running else SessionStatus.STOPPED,
                    created_at=info.created_at or datetime.now(UTC),
                )
            )
        self._registry.replace_all(sessions)
        logger.info(
            "Sessions reconciled",
            running=sum(s.status is SessionStatus.RUNNING for s in sessions),
            stopped=sum(s.status is SessionStatus.STOPPED for s in sessions),
        )
        return sessions

    async def shutdown(self) -> None:
        """Best-effort stop of every running session, then forget them all."""
        if self._settings.container.stop_on_shutdown:
            running = [s for s in self._registry.all() if s.status is SessionStatus.RUNNING]
            results = await asyncio.gather(
                *(self.stop_session(s.tenant_id) for s in running),
                return_exceptions=True,
            )
            for session, result in zip(running, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning(
                        "Failed to stop session during shutdown",
                        tenant=session.tenant_id,
                        err=str(result),
                    )
        self._registry.clear()
