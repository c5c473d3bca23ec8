"""Durable per-(tenant, provider) credential storage.

One JSON file per key under ``<credentials_dir>/<tenant>/<provider>.json``,
written atomically (temp file + rename) with owner-only permissions.
Credentials outlive session containers: nothing in the lifecycle path
deletes them, only an explicit :meth:`CredentialStore.delete`.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from pydantic import ValidationError

from tenantbox.config import get_settings
from tenantbox.errors import CredentialNotFoundError, ProtocolViolationError
from tenantbox.logger import logger
from tenantbox.types import Credential, validate_tenant_id
from tenantbox.utils import KeyedLocks, write_text_atomic


class CredentialStore:
    def __init__(self, root: Path | None = None) -> None:
        self.root = root or get_settings().credentials_dir
        self._locks = KeyedLocks()

    def _path(self, tenant_id: str, provider: str) -> Path:
        validate_tenant_id(tenant_id)
        validate_tenant_id(provider)
        return self.root / tenant_id / f"{provider}.json"

    async def put(self, tenant_id: str, provider: str, credential: Credential) -> None:
        """Store ``credential``, replacing any previous one (last write wins)."""
        path = self._path(tenant_id, provider)
        if credential.tenant_id != tenant_id or credential.provider != provider:
            update = {"tenant_id": tenant_id, "provider": provider}
            credential = credential.model_copy(update=update)
        payload = credential.model_dump_json(indent=2)

        async with self._locks.hold((tenant_id, provider)):
            await asyncio.to_thread(write_text_atomic, path, payload)

        logger.info(
            "Credential stored",
            tenant=tenant_id,
            provider=provider,
            subject=credential.subject or None,
            expires_at=credential.expires_at.isoformat() if credential.expires_at else None,
        )

    async def get(self, tenant_id: str, provider: str) -> Credential:
        path = self._path(tenant_id, provider)
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            msg = f"No {provider} credential stored for tenant {tenant_id}"
            raise CredentialNotFoundError(msg) from exc
        try:
            return Credential.model_validate_json(text)
        except ValidationError as exc:
            # raw content deliberately not attached: it may hold token material
            logger.error("Stored credential is unreadable", tenant=tenant_id, provider=provider)
            msg = f"Stored {provider} credential for tenant {tenant_id} is corrupt"
            raise ProtocolViolationError(msg) from exc

    async def find(self, tenant_id: str, provider: str) -> Credential | None:
        try:
            return await self.get(tenant_id, provider)
        except CredentialNotFoundError:
            return None

    async def delete(self, tenant_id: str, provider: str) -> bool:
        """Remove a stored credential. Returns False when there was none."""
        path = self._path(tenant_id, provider)
        async with self._locks.hold((tenant_id, provider)):
            existed = await asyncio.to_thread(path.exists)
            await asyncio.to_thread(path.unlink, missing_ok=True)
        if existed:
            logger.info("Credential deleted", tenant=tenant_id, provider=provider)
        return existed

    async def list(self, tenant_id: str) -> list[str]:
        """Providers with a stored credential for ``tenant_id``."""
        validate_tenant_id(tenant_id)
        tenant_dir = self.root / tenant_id

        def _scan() -> list[str]:
            if not tenant_dir.is_dir():
                return []
            return sorted(
                p.stem for p in tenant_dir.glob("*.json") if not p.name.startswith(".")
            )

        return await asyncio.to_thread(_scan)
