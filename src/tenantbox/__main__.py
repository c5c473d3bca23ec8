"""Entry point for `python -m tenantbox` / `tenantbox`.

Subcommands:
    tenantbox serve       Run the service (default)
    tenantbox sessions    List the session containers the runtime knows about
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _serve() -> None:
    from tenantbox.app import TenantboxApp

    app = TenantboxApp()
    asyncio.run(app.run())


def _sessions() -> None:
    from tenantbox.config import get_settings
    from tenantbox.credentials.store import CredentialStore
    from tenantbox.execution.channel import ExecutionChannel
    from tenantbox.runtime.runtime import get_runtime
    from tenantbox.sessions.manager import SessionManager

    async def _list() -> int:
        runtime = get_runtime()
        await runtime.ensure_running()
        manager = SessionManager(runtime, ExecutionChannel(runtime), CredentialStore())
        sessions = await manager.reconcile()
        if not sessions:
            print(f"No session containers (prefix {get_settings().container.name_prefix!r})")
            return 0
        for s in sorted(sessions, key=lambda s: s.tenant_id):
            print(f"{s.tenant_id:<24} {s.status.value:<8} {s.container_name}  {s.volume_name}")
        return 0

    sys.exit(asyncio.run(_list()))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tenantbox",
        description="Per-tenant sandbox containers with interactive and device-flow login",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the service (default)")
    sub.add_parser("sessions", help="List session containers")

    args = parser.parse_args()

    match args.command:
        case "sessions":
            _sessions()
        case _:
            _serve()


if __name__ == "__main__":
    main()
