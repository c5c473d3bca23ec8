"""Credential persistence."""

from tenantbox.credentials.store import CredentialStore

ASSISTANT_PROVIDER = "assistant"
SOURCE_CONTROL_PROVIDER = "github"

__all__ = ["ASSISTANT_PROVIDER", "SOURCE_CONTROL_PROVIDER", "CredentialStore"]
