"""In-memory session index, keyed by tenant id.

Never persisted: on startup it is rebuilt from what the container runtime
actually reports. Mutations for one tenant happen under that tenant's lock.
"""

from __future__ import annotations

from collections.abc import Iterable

from tenantbox.types import Session
from tenantbox.utils import KeyedLocks


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self.locks = KeyedLocks()

    def get(self, tenant_id: str) -> Session | None:
        return self._sessions.get(tenant_id)

    def put(self, session: Session) -> None:
        self._sessions[session.tenant_id] = session

    def pop(self, tenant_id: str) -> Session | None:
        return self._sessions.pop(tenant_id, None)

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def replace_all(self, sessions: Iterable[Session]) -> None:
        self._sessions = {s.tenant_id: s for s in sessions}

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._sessions
