"""On-disk formats used by the tools inside session containers.

The assistant CLI keeps its OAuth tokens in a JSON file shaped like::

    {"claudeAiOauth": {"accessToken": "...", "refreshToken": "...",
                        "expiresAt": 1767225600000, "scopes": [...],
                        "subscriptionType": "pro"}}

``expiresAt`` is milliseconds since the epoch.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime

from tenantbox.errors import ProtocolViolationError
from tenantbox.types import Credential

# long-lived tokens printed by `claude setup-token`
_OAUTH_TOKEN_RE = re.compile(r"sk-ant-oat\d\d-[A-Za-z0-9_\-]{20,}")


def parse_assistant_credentials(text: str, *, tenant_id: str, provider: str) -> Credential:
    """Build a Credential from the assistant CLI's credential file.

    The file content is never attached to the raised error since it holds
    token material.
    """
    try:
        oauth = json.loads(text)["claudeAiOauth"]
        access_token = oauth["accessToken"]
    except (json.JSONDecodeError, KeyError, TypeError) as exc:
        raise ProtocolViolationError("Assistant credential file has an unexpected shape") from exc
    if not isinstance(access_token, str) or not access_token:
        raise ProtocolViolationError("Assistant credential file has no access token")

    expires_at = None
    if isinstance(oauth.get("expiresAt"), int | float):
        expires_at = datetime.fromtimestamp(oauth["expiresAt"] / 1000, tz=UTC)

    return Credential(
        tenant_id=tenant_id,
        provider=provider,
        access_token=access_token,
        refresh_token=oauth.get("refreshToken") or None,
        expires_at=expires_at,
        scopes=list(oauth.get("scopes") or []),
        subject=oauth.get("subscriptionType") or "",
    )


def render_assistant_credentials(credential: Credential) -> str:
    """Inverse of :func:`parse_assistant_credentials`, for restoring into a container."""
    oauth: dict[str, object] = {
        "accessToken": credential.access_token.get_secret_value(),
        "refreshToken": (
            credential.refresh_token.get_secret_value() if credential.refresh_token else None
        ),
        "expiresAt": (
            int(credential.expires_at.timestamp() * 1000) if credential.expires_at else None
        ),
        "scopes": credential.scopes,
    }
    if credential.subject:
        oauth["subscriptionType"] = credential.subject
    return json.dumps({"claudeAiOauth": oauth})


def find_token_in_output(output: str) -> str | None:
    match = _OAUTH_TOKEN_RE.search(output)
    return match.group(0) if match else None
