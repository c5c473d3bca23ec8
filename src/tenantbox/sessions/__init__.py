"""Per-tenant session container lifecycle."""

from tenantbox.sessions.manager import SessionManager

__all__ = ["SessionManager"]
