"""Interactive login driver for the assistant CLI inside a session container.

The login program is a terminal UI: it shows a couple of menus, prints an
OAuth URL, then waits for the user to paste back a code. Driving it is split
across two tasks:

  Responder   (``start``)      spawns the program, hands its ExecutionHandle
                               to the supervisor and returns as soon as the
                               URL is known.
  Supervisor  (background)     sole owner of the handle. Reads output,
                               answers the menus, delivers the submitted
                               code, advances the state and always
                               terminates the program when it is done.

State only moves forward along ``AuthState``; every stage has a deadline,
after which the session gets one grace period before the program is killed.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from tenantbox.auth.classify import Marker, MarkerKind, classify_output, strip_ansi
from tenantbox.config import get_settings
from tenantbox.credentials import ASSISTANT_PROVIDER
from tenantbox.credentials.formats import find_token_in_output, parse_assistant_credentials
from tenantbox.credentials.store import CredentialStore
from tenantbox.errors import (
    AuthFailedError,
    AuthSessionNotFoundError,
    AuthStateError,
    ConflictError,
    OrchestratorError,
    ProtocolViolationError,
    UserTimeoutError,
)
from tenantbox.execution.channel import ExecutionChannel, ExecutionHandle
from tenantbox.logger import logger
from tenantbox.types import AuthState, Credential
from tenantbox.utils import create_background_task

_MAX_PENDING = 16 * 1024
_MAX_TAIL = 8 * 1024


@dataclass(eq=False)
class AuthSession:
    """Progress of one interactive login for a (tenant, provider) pair."""

    tenant_id: str
    provider: str
    container_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: AuthState = AuthState.INIT
    history: list[AuthState] = field(default_factory=lambda: [AuthState.INIT])
    url: str | None = None
    error: str | None = None
    failure: OrchestratorError | None = field(default=None, repr=False)
    deadline_at: datetime | None = None
    in_grace: bool = False
    output_tail: str = field(default="", repr=False)
    supervisor: asyncio.Task | None = field(default=None, repr=False)  # type: ignore[type-arg]
    _handoff: asyncio.Future | None = field(default=None, repr=False)  # type: ignore[type-arg]
    _codes: asyncio.Queue[str] = field(default_factory=asyncio.Queue, repr=False)
    _submit_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def advance(self, target: AuthState) -> bool:
        """Move forward to ``target``, recording every state passed through.

        Returns False (and changes nothing) for backward or terminal moves.
        """
        if self.state.is_terminal:
            return False
        if target is AuthState.LOGIN_FAILED:
            self.history.append(target)
        elif target <= self.state:
            return False
        else:
            self.history.extend(AuthState(v) for v in range(self.state + 1, target + 1))
        self.state = target
        self._notify()
        return True

    def fail(self, reason: str, error: OrchestratorError | None = None) -> bool:
        if self.state.is_terminal:
            return False
        self.error = reason
        self.failure = error
        return self.advance(AuthState.LOGIN_FAILED)

    def record_output(self, text: str) -> None:
        self.output_tail = (self.output_tail + strip_ansi(text))[-_MAX_TAIL:]

    def _notify(self) -> None:
        previous, self._changed = self._changed, asyncio.Event()
        previous.set()

    async def wait_until(self, predicate: Callable[[], bool], timeout: float) -> bool:
        """Wait for ``predicate`` to hold after some state change; False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
            except TimeoutError:
                return predicate()
        return True


class _StageClock:
    """Per-stage deadline plus one grace period, reset on every state change."""

    def __init__(self, auth: AuthSession, stage_timeout: float, grace_period: float) -> None:
        self._auth = auth
        self._stage_timeout = stage_timeout
        self._grace_period = grace_period
        self._loop = asyncio.get_running_loop()
        self._stage = auth.state
        self._deadline = 0.0
        self._grace_deadline: float | None = None
        self._restart()

    def _restart(self) -> None:
        self._stage = self._auth.state
        self._deadline = self._loop.time() + self._stage_timeout
        self._grace_deadline = None
        self._auth.in_grace = False
        self._auth.deadline_at = datetime.now(UTC) + timedelta(seconds=self._stage_timeout)

    def expired(self) -> bool:
        """True once both the stage deadline and its grace period have passed."""
        if self._auth.state != self._stage:
            self._restart()
            return False
        now = self._loop.time()
        if self._grace_deadline is None:
            if now < self._deadline:
                return False
            self._grace_deadline = now + self._grace_period
            self._auth.in_grace = True
            self._auth.deadline_at = datetime.now(UTC) + timedelta(seconds=self._grace_period)
            logger.warning(
                "Login stage timed out, grace period started",
                tenant=self._auth.tenant_id,
                state=self._stage.name,
                grace_seconds=self._grace_period,
            )
            return False
        return now >= self._grace_deadline

    @property
    def stage(self) -> AuthState:
        return self._stage


class InteractiveAuthenticator:
    """Runs assistant logins; at most one active login per (tenant, provider)."""

    provider = ASSISTANT_PROVIDER

    def __init__(self, channel: ExecutionChannel, store: CredentialStore) -> None:
        s = get_settings()
        self._channel = channel
        self._store = store
        self._cfg = s.assistant_auth
        self._sessions: dict[tuple[str, str], AuthSession] = {}

    def status(self, tenant_id: str) -> AuthSession | None:
        return self._sessions.get((tenant_id, self.provider))

    def _active(self, tenant_id: str) -> AuthSession | None:
        auth = self.status(tenant_id)
        return auth if auth is not None and not auth.is_terminal else None

    # --- responder ---------------------------------------------------------

    async def start(self, tenant_id: str, container_id: str) -> AuthSession:
        """Start a login and return once the login URL is known.

        Raises ConflictError if a login is already running for the tenant,
        UserTimeoutError if no URL appeared within the stage timeout (the
        login keeps running; poll :meth:`status`), and the recorded failure
        if the login ended before producing a URL.
        """
        if self._active(tenant_id) is not None:
            raise ConflictError("A login is already in progress for this tenant")

        auth = AuthSession(tenant_id=tenant_id, provider=self.provider, container_id=container_id)
        self._sessions[(tenant_id, self.provider)] = auth

        try:
            handle = await self._channel.execute(
                container_id, list(self._cfg.login_command), tty=True
            )
        except OrchestratorError as exc:
            auth.fail(f"could not start login program: {exc}", exc)
            raise

        handoff: asyncio.Future[ExecutionHandle] = asyncio.get_running_loop().create_future()
        auth._handoff = handoff
        auth.supervisor = create_background_task(
            self._supervise(auth, handoff), name=f"assistant-login-{tenant_id}"
        )
        handoff.set_result(handle)
        logger.info("Assistant login started", tenant=tenant_id, container=container_id)

        reached = await auth.wait_until(
            lambda: auth.state >= AuthState.URL_PROVIDED, self._cfg.stage_timeout
        )
        if not reached:
            raise UserTimeoutError(
                "The login URL has not appeared yet; check the login status shortly",
                stage="url",
            )
        if auth.state is AuthState.LOGIN_FAILED:
            raise auth.failure or AuthFailedError(auth.error or "login failed")
        return auth

    async def submit_code(self, tenant_id: str, code: str) -> AuthSession:
        """Hand the user's code to the running login and wait for the verdict.

        A concurrent submission for the same tenant is rejected, never
        queued. On timeout the state is left as is and UserTimeoutError is
        raised; the login may still finish.
        """
        auth = self._active(tenant_id)
        if auth is None:
            raise AuthSessionNotFoundError("No login in progress for this tenant")
        if auth._submit_lock.locked():
            raise ConflictError("A code is already being submitted for this login")

        async with auth._submit_lock:
            if auth.state < AuthState.URL_PROVIDED:
                raise AuthStateError("The login URL has not been shown yet")
            if auth.state >= AuthState.CODE_SUBMITTED or not auth._codes.empty():
                raise AuthStateError("A code was already submitted for this login")

            auth._codes.put_nowait(code.strip())
            done = await auth.wait_until(lambda: auth.is_terminal, self._cfg.stage_timeout)
            if not done:
                raise UserTimeoutError(
                    "Login is still being verified; check the login status shortly",
                    stage="result",
                )
            if auth.state is AuthState.LOGIN_FAILED:
                raise auth.failure or AuthFailedError(auth.error or "login failed")
            return auth

    async def abort(self, tenant_id: str) -> bool:
        """Stop a running login. Returns False if none was running."""
        auth = self._active(tenant_id)
        if auth is None:
            return False
        auth.fail("aborted")
        task = auth.supervisor
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        # covers a supervisor cancelled before it ever took the handle
        handoff = auth._handoff
        if handoff is not None and handoff.done() and not handoff.cancelled():
            await handoff.result().terminate()
        logger.info("Assistant login aborted", tenant=tenant_id)
        return True

    async def forget(self, tenant_id: str) -> None:
        await self.abort(tenant_id)
        self._sessions.pop((tenant_id, self.provider), None)

    async def abort_all(self) -> None:
        tenants = [t for (t, _), auth in self._sessions.items() if not auth.is_terminal]
        await asyncio.gather(*(self.abort(t) for t in tenants), return_exceptions=True)

    # --- supervisor --------------------------------------------------------

    async def _supervise(
        self, auth: AuthSession, handoff: asyncio.Future[ExecutionHandle]
    ) -> None:
        handle = await handoff
        try:
            await self._drive(auth, handle)
        except asyncio.CancelledError:
            auth.fail("aborted")
            raise
        except OrchestratorError as exc:
            logger.warning("Assistant login failed", tenant=auth.tenant_id, err=str(exc))
            auth.fail(str(exc), exc)
        except Exception as exc:
            auth.fail(f"internal error: {exc}")
            raise
        finally:
            await handle.terminate()
            logger.info(
                "Assistant login finished",
                tenant=auth.tenant_id,
                state=auth.state.name,
                error=auth.error,
            )

    async def _drive(self, auth: AuthSession, handle: ExecutionHandle) -> None:
        clock = _StageClock(auth, self._cfg.stage_timeout, self._cfg.grace_period)
        pending = ""
        while not auth.is_terminal:
            await self._deliver_code(auth, handle)
            chunk = await handle.read()
            if chunk:
                auth.record_output(chunk)
                pending = await self._consume(auth, handle, pending + chunk)
            elif handle.at_eof:
                # flush a final line the program printed without a newline
                await self._consume(auth, handle, pending + "\n")
                await self._on_exit(auth, handle)
                return
            if clock.expired():
                auth.fail(
                    f"timed out at {clock.stage.name.lower()}",
                    UserTimeoutError("Login timed out", stage=clock.stage.name.lower()),
                )

    async def _deliver_code(self, auth: AuthSession, handle: ExecutionHandle) -> None:
        if auth._codes.empty():
            return
        if auth.state not in (AuthState.URL_PROVIDED, AuthState.AWAITING_CODE):
            return
        code = auth._codes.get_nowait()
        await handle.write(code + "\r")
        auth.advance(AuthState.CODE_SUBMITTED)
        logger.info("Authorization code delivered", tenant=auth.tenant_id)

    async def _consume(self, auth: AuthSession, handle: ExecutionHandle, text: str) -> str:
        """Act on every complete marker in ``text``; return the unconsumed rest."""
        while not auth.is_terminal:
            marker = classify_output(text)
            if marker.kind is MarkerKind.UNKNOWN:
                return marker.remainder[-_MAX_PENDING:]
            text = marker.remainder
            await self._on_marker(auth, handle, marker)
        return ""

    async def _on_marker(self, auth: AuthSession, handle: ExecutionHandle, marker: Marker) -> None:
        logger.debug("Login marker", tenant=auth.tenant_id, marker=marker.kind.value)
        match marker.kind:
            case MarkerKind.HANDSHAKE_PROMPT:
                if auth.state < AuthState.HANDSHAKE_ACK:
                    await handle.write(self._cfg.handshake_response)
                    auth.advance(AuthState.HANDSHAKE_ACK)
            case MarkerKind.METHOD_PROMPT:
                if auth.state < AuthState.METHOD_SELECTED:
                    await handle.write(self._cfg.method_response)
                    auth.advance(AuthState.METHOD_SELECTED)
                    auth.advance(AuthState.AWAITING_URL)
            case MarkerKind.URL_DETECTED:
                if auth.state < AuthState.URL_PROVIDED:
                    auth.url = marker.value
                    auth.advance(AuthState.URL_PROVIDED)
                    logger.info("Login URL ready", tenant=auth.tenant_id)
            case MarkerKind.CODE_PROMPT:
                if AuthState.URL_PROVIDED <= auth.state < AuthState.AWAITING_CODE:
                    auth.advance(AuthState.AWAITING_CODE)
            case MarkerKind.SUCCESS:
                await self._complete(auth, confirmed=True)
            case MarkerKind.FAILURE:
                auth.fail(marker.value or "login failed", AuthFailedError(marker.value))

    async def _on_exit(self, auth: AuthSession, handle: ExecutionHandle) -> None:
        if auth.is_terminal:
            return
        exit_code = handle.poll()
        if auth.state < AuthState.URL_PROVIDED:
            exc = ProtocolViolationError(
                "Login program exited before printing a login URL",
                raw_output=auth.output_tail,
            )
            auth.fail(str(exc), exc)
        elif auth.state >= AuthState.CODE_SUBMITTED:
            # some versions exit right after saving without a success banner
            await self._complete(auth, confirmed=False)
        else:
            auth.fail(f"login program exited before a code was submitted (exit {exit_code})")

    async def _complete(self, auth: AuthSession, *, confirmed: bool) -> None:
        try:
            credential = await self._extract_credential(auth)
        except ProtocolViolationError as exc:
            if not confirmed:
                auth.fail(str(exc), exc)
                return
            # success was printed; the state may not regress, record the problem instead
            logger.error(
                "Login succeeded but credentials could not be extracted",
                tenant=auth.tenant_id,
                err=str(exc),
            )
            auth.error = str(exc)
            auth.failure = exc
            auth.advance(AuthState.LOGIN_SUCCESSFUL)
            return

        await self._store.put(auth.tenant_id, auth.provider, credential)
        auth.advance(AuthState.LOGIN_SUCCESSFUL)
        logger.info("Assistant login successful", tenant=auth.tenant_id)

    async def _extract_credential(self, auth: AuthSession) -> Credential:
        """Read the credential file in the container, else parse it from output."""
        try:
            result = await self._channel.run(
                auth.container_id, ["cat", self._cfg.credentials_path]
            )
        except (OrchestratorError, TimeoutError) as exc:
            logger.warning("Reading credential file failed", tenant=auth.tenant_id, err=str(exc))
            result = None

        if result is not None and result.ok and result.output.strip():
            return parse_assistant_credentials(
                result.output, tenant_id=auth.tenant_id, provider=auth.provider
            )

        token = find_token_in_output(auth.output_tail)
        if token is not None:
            return Credential(tenant_id=auth.tenant_id, provider=auth.provider, access_token=token)

        raise ProtocolViolationError(
            "No credential material found after login",
            raw_output=auth.output_tail[-2000:],
        )
