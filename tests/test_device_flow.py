"""Tests for the OAuth device flow client against a local fake provider."""

from __future__ import annotations

import base64
import hashlib

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from conftest import make_settings

from tenantbox.auth.device_flow import DEVICE_GRANT_TYPE, DeviceFlowClient, generate_pkce_pair
from tenantbox.config import DeviceFlowConfig
from tenantbox.errors import (
    AccessDeniedError,
    AuthStateError,
    DeviceCodeExpiredError,
    PermanentConfigError,
    ProtocolViolationError,
    TransientInfraError,
)

PENDING = (400, {"error": "authorization_pending"})
GRANTED = (200, {"access_token": "gho_granted", "token_type": "bearer", "scope": "repo,gist"})


class FakeProvider:
    """Device and token endpoints that answer from scripted replies."""

    def __init__(self) -> None:
        self.device_reply: tuple[int, dict] = (
            200,
            {
                "device_code": "dev-123",
                "user_code": "WDJB-MJHT",
                "verification_uri": "https://github.com/login/device",
                "expires_in": 900,
                "interval": 5,
            },
        )
        self.token_replies: list[tuple[int, dict]] = []
        self.device_forms: list[dict] = []
        self.token_forms: list[dict] = []
        self.user_headers: list[dict] = []

    async def device_code(self, request: web.Request) -> web.Response:
        self.device_forms.append(dict(await request.post()))
        status, body = self.device_reply
        return web.json_response(body, status=status)

    async def token(self, request: web.Request) -> web.Response:
        self.token_forms.append(dict(await request.post()))
        status, body = self.token_replies.pop(0) if self.token_replies else PENDING
        return web.json_response(body, status=status)

    async def user(self, request: web.Request) -> web.Response:
        self.user_headers.append(dict(request.headers))
        if request.headers.get("Authorization") != "Bearer gho_granted":
            return web.json_response({"message": "Bad credentials"}, status=401)
        return web.json_response({"login": "octocat"})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/login/device/code", self.device_code)
        app.router.add_post("/login/oauth/access_token", self.token)
        app.router.add_get("/user", self.user)
        return app


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
async def provider():
    fake = FakeProvider()
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
def configure(monkeypatch, tmp_path, provider):
    def _configure(**cfg) -> None:
        base = provider.base_url
        device_flow = DeviceFlowConfig(
            device_code_url=f"{base}/login/device/code",
            token_url=f"{base}/login/oauth/access_token",
            user_url=f"{base}/user",
            **cfg,
        )
        monkeypatch.setattr(
            "tenantbox.config._settings",
            make_settings(device_flow=device_flow, credentials_dir=tmp_path / "credentials"),
        )

    _configure()
    return _configure


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def make_client(configure, clock):
    clients: list[DeviceFlowClient] = []

    def _make(**cfg) -> DeviceFlowClient:
        if cfg:
            configure(**cfg)
        client = DeviceFlowClient(sleep=clock.sleep, clock=clock)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.close()


class TestStartDeviceAuth:
    async def test_returns_code_and_url(self, make_client, provider):
        client = make_client()
        auth = await client.start_device_auth()
        assert auth.user_code == "WDJB-MJHT"
        assert auth.verification_uri == "https://github.com/login/device"
        assert auth.interval == 5
        form = provider.device_forms[0]
        assert form["scope"] == "repo read:org gist"
        assert "code_challenge" not in form

    async def test_misconfigured_client(self, make_client, provider):
        provider.device_reply = (400, {"error": "invalid_client"})
        with pytest.raises(PermanentConfigError):
            await make_client().start_device_auth()

    async def test_incomplete_response(self, make_client, provider):
        provider.device_reply = (200, {"device_code": "dev-123"})
        with pytest.raises(ProtocolViolationError):
            await make_client().start_device_auth()

    async def test_provider_down(self, make_client, provider):
        provider.device_reply = (503, {})
        with pytest.raises(TransientInfraError):
            await make_client().start_device_auth()


class TestPollForToken:
    async def test_pending_then_granted(self, make_client, provider, clock):
        provider.token_replies = [PENDING, PENDING, PENDING, GRANTED]
        client = make_client()
        auth = await client.start_device_auth()

        grant = await client.poll_for_token(auth.device_code)
        assert grant.access_token == "gho_granted"
        assert grant.scopes == ["repo", "gist"]
        assert clock.sleeps == [5, 5, 5, 5]
        assert len(provider.token_forms) == 4
        form = provider.token_forms[0]
        assert form["grant_type"] == DEVICE_GRANT_TYPE
        assert form["device_code"] == "dev-123"

    async def test_slow_down_grows_the_interval(self, make_client, provider, clock):
        provider.token_replies = [(400, {"error": "slow_down"}), PENDING, GRANTED]
        client = make_client()
        auth = await client.start_device_auth()
        await client.poll_for_token(auth.device_code)
        assert clock.sleeps == [5, 10, 10]

    async def test_slow_down_honours_a_larger_offered_interval(
        self, make_client, provider, clock
    ):
        provider.token_replies = [(400, {"error": "slow_down", "interval": 30}), GRANTED]
        client = make_client()
        auth = await client.start_device_auth()
        await client.poll_for_token(auth.device_code)
        assert clock.sleeps == [5, 30]

    async def test_no_poll_after_expiry(self, make_client, provider, clock):
        body = dict(provider.device_reply[1], expires_in=12)
        provider.device_reply = (200, body)
        client = make_client()
        auth = await client.start_device_auth()
        with pytest.raises(DeviceCodeExpiredError):
            await client.poll_for_token(auth.device_code)
        assert len(provider.token_forms) == 2
        assert clock.now >= 12

    async def test_provider_reports_expiry(self, make_client, provider):
        provider.token_replies = [(400, {"error": "expired_token"})]
        client = make_client()
        auth = await client.start_device_auth()
        with pytest.raises(DeviceCodeExpiredError):
            await client.poll_for_token(auth.device_code)

    async def test_access_denied(self, make_client, provider):
        provider.token_replies = [PENDING, (400, {"error": "access_denied"})]
        client = make_client()
        auth = await client.start_device_auth()
        with pytest.raises(AccessDeniedError):
            await client.poll_for_token(auth.device_code)

    async def test_transient_errors_are_retried(self, make_client, provider):
        provider.token_replies = [(502, {}), GRANTED]
        client = make_client()
        auth = await client.start_device_auth()
        grant = await client.poll_for_token(auth.device_code)
        assert grant.access_token == "gho_granted"
        assert len(provider.token_forms) == 2

    async def test_too_many_transient_errors(self, make_client, provider):
        provider.token_replies = [(502, {}), (502, {}), GRANTED]
        client = make_client(max_transient_errors=1)
        auth = await client.start_device_auth()
        with pytest.raises(TransientInfraError):
            await client.poll_for_token(auth.device_code)

    async def test_finished_flow_cannot_be_polled_again(self, make_client, provider):
        provider.token_replies = [GRANTED]
        client = make_client()
        auth = await client.start_device_auth()
        await client.poll_for_token(auth.device_code)
        with pytest.raises(AuthStateError):
            await client.poll_for_token(auth.device_code)

    async def test_cancelled_flow_cannot_be_polled(self, make_client):
        client = make_client()
        auth = await client.start_device_auth()
        client.cancel(auth.device_code)
        assert client.current_interval(auth.device_code) is None
        with pytest.raises(AuthStateError):
            await client.poll_for_token(auth.device_code)


class TestPkce:
    def test_pair_shape(self):
        verifier, challenge = generate_pkce_pair()
        assert 43 <= len(verifier) <= 128
        assert "=" not in verifier
        assert "=" not in challenge

    async def test_challenge_then_verifier(self, make_client, provider):
        provider.token_replies = [GRANTED]
        client = make_client(use_pkce=True)
        auth = await client.start_device_auth()
        await client.poll_for_token(auth.device_code)

        challenge = provider.device_forms[0]["code_challenge"]
        assert provider.device_forms[0]["code_challenge_method"] == "S256"
        assert "code_verifier" not in provider.device_forms[0]

        verifier = provider.token_forms[0]["code_verifier"]
        digest = hashlib.sha256(verifier.encode()).digest()
        assert base64.urlsafe_b64encode(digest).decode().rstrip("=") == challenge


class TestFetchSubject:
    async def test_returns_login(self, make_client, provider):
        assert await make_client().fetch_subject("gho_granted") == "octocat"
        assert provider.user_headers[0]["Authorization"] == "Bearer gho_granted"

    async def test_empty_on_failure(self, make_client):
        assert await make_client().fetch_subject("gho_wrong") == ""
