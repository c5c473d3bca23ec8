"""Process host: start the service, wait for a signal, shut down cleanly."""

from __future__ import annotations

import asyncio
import os
import signal

from tenantbox.config import get_settings
from tenantbox.logger import logger, set_level
from tenantbox.service import TenantService

_FORCE_EXIT_AFTER = 12.0


class TenantboxApp:
    def __init__(self, service: TenantService | None = None) -> None:
        self.service = service or TenantService()
        self._stop = asyncio.Event()
        self._shutting_down = False

    def _on_signal(self, sig_name: str) -> None:
        """First signal stops gracefully; a second one force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)
        # hard-exit watchdog in case teardown hangs
        asyncio.get_running_loop().call_later(_FORCE_EXIT_AFTER, lambda: os._exit(1))
        self._stop.set()

    async def run(self) -> None:
        set_level(get_settings().logging.level)
        await self.service.start()
        sessions = self.service.sessions.list_sessions()
        logger.info("tenantbox running", sessions=len(sessions))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._on_signal(s.name))

        try:
            await self._stop.wait()
        finally:
            await self.service.shutdown()
            logger.info("tenantbox stopped")
