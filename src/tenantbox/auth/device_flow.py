"""OAuth 2.0 Device Authorization Grant (RFC 8628) client.

Pure network protocol: no containers involved. ``start_device_auth`` returns
the user code and verification URL immediately; ``poll_for_token`` then
polls the token endpoint until the user approves, denies, or the device
code expires.

Optional PKCE: the challenge goes out with the authorization request, the
verifier only with the token exchange. The verifier lives in this process's
memory for the duration of the flow and nowhere else.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import re
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from tenantbox.config import get_settings
from tenantbox.credentials import SOURCE_CONTROL_PROVIDER
from tenantbox.errors import (
    AccessDeniedError,
    AuthStateError,
    DeviceCodeExpiredError,
    PermanentConfigError,
    ProtocolViolationError,
    TransientInfraError,
)
from tenantbox.logger import logger
from tenantbox.types import DeviceAuthorization, TokenGrant

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
SLOW_DOWN_INCREMENT = 5  # seconds, per RFC 8628 §3.5

_CONFIG_ERRORS = frozenset(
    {
        "invalid_client",
        "incorrect_client_credentials",
        "unauthorized_client",
        "unsupported_grant_type",
        "device_flow_disabled",
        "incorrect_device_code",
        "invalid_scope",
    }
)
_SCOPE_SPLIT = re.compile(r"[\s,]+")


def generate_pkce_pair() -> tuple[str, str]:
    """Return ``(verifier, challenge)`` for the S256 method, base64url without padding."""
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


@dataclass
class _PendingAuthorization:
    authorization: DeviceAuthorization
    deadline: float
    interval: int
    code_verifier: str | None = field(default=None, repr=False)


def _safe_fields(payload: dict[str, Any]) -> str:
    """Describe a provider response without echoing token material."""
    return ", ".join(sorted(payload))


class DeviceFlowClient:
    provider = SOURCE_CONTROL_PROVIDER

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cfg = get_settings().device_flow
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._clock = clock
        self._pending: dict[str, _PendingAuthorization] = {}

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._cfg.request_timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        self._pending.clear()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post_form(self, url: str, form: dict[str, str]) -> dict[str, Any]:
        """POST ``form`` url-encoded and return the JSON body.

        5xx and network failures are transient. Error bodies (4xx with an
        ``error`` field) are returned for the caller to interpret.
        """
        try:
            async with self._http().post(
                url, data=form, headers={"Accept": "application/json"}
            ) as resp:
                status = resp.status
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    payload = None
        except (aiohttp.ClientError, TimeoutError, OSError) as exc:
            msg = f"Request to {url} failed: {exc}"
            raise TransientInfraError(msg) from exc

        if status >= 500 or status == 429:
            raise TransientInfraError(f"{url} returned HTTP {status}")
        if not isinstance(payload, dict):
            raise ProtocolViolationError(f"{url} returned a non-JSON response (HTTP {status})")
        return payload

    async def start_device_auth(self) -> DeviceAuthorization:
        """Request a device code; returns without waiting for the user."""
        form = {"client_id": self._cfg.client_id, "scope": " ".join(self._cfg.scopes)}
        verifier: str | None = None
        if self._cfg.use_pkce:
            verifier, challenge = generate_pkce_pair()
            form["code_challenge"] = challenge
            form["code_challenge_method"] = "S256"

        payload = await self._post_form(self._cfg.device_code_url, form)
        if "error" in payload:
            error = str(payload["error"])
            description = payload.get("error_description", "")
            if error in _CONFIG_ERRORS:
                raise PermanentConfigError(f"Device authorization rejected: {error} {description}")
            raise ProtocolViolationError(
                f"Device authorization failed: {error} {description}",
                raw_output=_safe_fields(payload),
            )

        try:
            authorization = DeviceAuthorization(
                device_code=str(payload["device_code"]),
                user_code=str(payload["user_code"]),
                verification_uri=str(payload["verification_uri"]),
                expires_in=int(payload["expires_in"]),
                interval=max(int(payload.get("interval") or self._cfg.default_interval), 1),
                verification_uri_complete=payload.get("verification_uri_complete"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolViolationError(
                "Device authorization response is missing fields",
                raw_output=_safe_fields(payload),
            ) from exc

        self._pending[authorization.device_code] = _PendingAuthorization(
            authorization=authorization,
            deadline=self._clock() + authorization.expires_in,
            interval=authorization.interval,
            code_verifier=verifier,
        )
        logger.info(
            "Device authorization started",
            verification_uri=authorization.verification_uri,
            expires_in=authorization.expires_in,
            interval=authorization.interval,
        )
        return authorization

    def current_interval(self, device_code: str) -> int | None:
        pending = self._pending.get(device_code)
        return pending.interval if pending else None

    def cancel(self, device_code: str) -> None:
        self._pending.pop(device_code, None)

    async def poll_for_token(self, device_code: str) -> TokenGrant:
        """Poll until the user finishes; raise on denial, expiry, or bad config.

        The interval only ever grows (``slow_down`` adds five seconds). Once
        ``expires_in`` has elapsed no further request is made.
        """
        pending = self._pending.get(device_code)
        if pending is None:
            raise AuthStateError("Unknown or finished device authorization")

        transient_errors = 0
        try:
            while True:
                await self._sleep(pending.interval)
                if self._clock() >= pending.deadline:
                    raise DeviceCodeExpiredError()

                form = {
                    "client_id": self._cfg.client_id,
                    "device_code": device_code,
                    "grant_type": DEVICE_GRANT_TYPE,
                }
                if pending.code_verifier is not None:
                    form["code_verifier"] = pending.code_verifier

                try:
                    payload = await self._post_form(self._cfg.token_url, form)
                except TransientInfraError as exc:
                    transient_errors += 1
                    if transient_errors > self._cfg.max_transient_errors:
                        raise
                    logger.warning(
                        "Token poll failed, will retry",
                        attempt=transient_errors,
                        err=str(exc),
                    )
                    continue
                transient_errors = 0

                error = payload.get("error")
                if error is None:
                    return self._grant_from(payload)

                match error:
                    case "authorization_pending":
                        continue
                    case "slow_down":
                        offered = int(payload.get("interval") or 0)
                        pending.interval = max(offered, pending.interval + SLOW_DOWN_INCREMENT)
                        logger.info("Device flow asked to slow down", interval=pending.interval)
                    case "expired_token":
                        raise DeviceCodeExpiredError()
                    case "access_denied":
                        raise AccessDeniedError()
                    case _ if error in _CONFIG_ERRORS:
                        description = payload.get("error_description", "")
                        raise PermanentConfigError(f"Token request rejected: {error} {description}")
                    case _:
                        raise ProtocolViolationError(
                            f"Unexpected token endpoint error: {error}",
                            raw_output=_safe_fields(payload),
                        )
        finally:
            # drops the PKCE verifier with it
            self._pending.pop(device_code, None)

    @staticmethod
    def _grant_from(payload: dict[str, Any]) -> TokenGrant:
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise ProtocolViolationError(
                "Token response has no access_token", raw_output=_safe_fields(payload)
            )
        scope = str(payload.get("scope") or "")
        expires_in = payload.get("expires_in")
        return TokenGrant(
            access_token=token,
            token_type=str(payload.get("token_type") or "bearer"),
            scopes=[s for s in _SCOPE_SPLIT.split(scope) if s],
            refresh_token=payload.get("refresh_token"),
            expires_in=int(expires_in) if expires_in else None,
        )

    async def fetch_subject(self, access_token: str) -> str:
        """Account login for a fresh token; ``""`` if the lookup fails."""
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }
        try:
            async with self._http().get(self._cfg.user_url, headers=headers) as resp:
                if resp.status != 200:
                    logger.warning("Account lookup failed", status=resp.status)
                    return ""
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, OSError, ValueError) as exc:
            logger.warning("Account lookup failed", err=str(exc))
            return ""
        return str(data.get("login") or "") if isinstance(data, dict) else ""
