"""Command execution inside a running session container.

An :class:`ExecutionHandle` wraps one ``docker exec`` client process. With
``tty=True`` the client is attached to a local pseudo-terminal (required by
login programs that refuse to run without one); otherwise stdout and stderr
are merged into one pipe. Reads are bounded per poll so callers can keep
their own overall deadlines.

Every command runs behind ``sh -c 'echo $$; exec "$@"'`` so the handle learns
the pid inside the container. Killing the local client alone leaves the
command running in the container; terminate signals both.

Failure kinds:
  ContainerNotFoundError  container missing or not running (checked first)
  ExecStartFailedError    CLI could not be spawned or the runtime could not
                          start the command
  StreamBrokenError       I/O failed mid-stream; never retried because
                          consumed output cannot be replayed
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import functools
import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from tenantbox.config import get_settings
from tenantbox.errors import (
    CommandFailedError,
    ContainerNotFoundError,
    ExecStartFailedError,
    StreamBrokenError,
)
from tenantbox.execution._pty import PtyStream, open_pty
from tenantbox.logger import logger
from tenantbox.runtime.runtime import ContainerRuntime, get_runtime
from tenantbox.types import ExecResult
from tenantbox.utils import retry_transient

_CHUNK = 8192

# docker exec exit codes when the command itself never ran
_START_FAILURE_CODES = (126, 127)
_START_FAILURE_MARKERS = (
    "oci runtime exec failed",
    "executable file not found",
    "no such file or directory",
    "permission denied",
    ": not found",
)
_GONE_MARKERS = ("no such container", "is not running")
# prints the in-container pid, then becomes the command under that pid
_PID_WRAPPER = ["sh", "-c", 'echo "$$"; exec "$@"', "sh"]


class ExecutionHandle:
    """One running command. Owned by whoever created it until terminated.

    When ``signal_remote`` is given the command was started behind a shell
    that prints its in-container pid first; that line is consumed here and
    never reaches the caller.
    """

    def __init__(
        self,
        *,
        container_id: str,
        command: list[str],
        proc: asyncio.subprocess.Process,
        stream: asyncio.StreamReader,
        pty: PtyStream | None = None,
        poll_interval: float = 1.0,
        terminate_grace: float = 3.0,
        signal_remote: Callable[[int, str], Awaitable[None]] | None = None,
    ) -> None:
        self.container_id = container_id
        self.command = command
        self.tty = pty is not None
        self.started_at = datetime.now(UTC)
        self.remote_pid: int | None = None
        self._proc = proc
        self._stream = stream
        self._pty = pty
        self._poll_interval = poll_interval
        self._terminate_grace = terminate_grace
        self._signal_remote = signal_remote
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pid_pending = signal_remote is not None
        self._head = ""
        self._backlog = ""
        self._eof = False
        self._terminated = False

    def __repr__(self) -> str:
        return (
            f"ExecutionHandle(container={self.container_id!r}, "
            f"command={self.command[:1]!r}, tty={self.tty})"
        )

    @property
    def at_eof(self) -> bool:
        return self._eof and not self._backlog

    @property
    def pid(self) -> int:
        return self._proc.pid

    def poll(self) -> int | None:
        """Exit code if the command has finished, else None."""
        return self._proc.returncode

    async def read(self, timeout: float | None = None) -> str:
        """Return whatever output arrives within one poll window.

        ``""`` means nothing arrived in the window, or end of stream when
        :attr:`at_eof` is set.
        """
        if self._backlog:
            text, self._backlog = self._backlog, ""
            return text
        if self._eof:
            return ""
        return await self._read_chunk(self._poll_interval if timeout is None else timeout)

    async def _read_chunk(self, timeout: float) -> str:
        try:
            data = await asyncio.wait_for(self._stream.read(_CHUNK), timeout=timeout)
        except TimeoutError:
            return ""
        except OSError as exc:
            msg = f"Reading from exec in {self.container_id} failed: {exc}"
            raise StreamBrokenError(msg) from exc
        if data:
            text = self._decoder.decode(data)
        else:
            self._eof = True
            text = self._decoder.decode(b"", final=True)
        if self._pid_pending:
            text = self._take_pid(text)
        return text

    def _take_pid(self, text: str) -> str:
        self._head += text
        line, sep, rest = self._head.partition("\n")
        if not sep and not self._eof:
            return ""
        self._pid_pending = False
        self._head = ""
        if sep and line.strip().isdigit():
            self.remote_pid = int(line.strip())
            return rest
        # the wrapper never ran, e.g. the runtime refused the exec
        return line + sep + rest

    async def read_to_end(self, timeout: float) -> str:
        """Collect output until end of stream; TimeoutError past ``timeout``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        chunks: list[str] = []
        while not self.at_eof:
            remaining = deadline - loop.time()
            if remaining <= 0:
                msg = f"{self.command[0]} in {self.container_id} did not finish within {timeout}s"
                raise TimeoutError(msg)
            chunks.append(await self.read(timeout=min(self._poll_interval, remaining)))
        return "".join(chunks)

    async def write(self, data: str | bytes) -> None:
        payload = data.encode() if isinstance(data, str) else data
        if self._terminated or self._proc.returncode is not None:
            raise StreamBrokenError(f"Cannot write to exited command in {self.container_id}")
        try:
            if self._pty is not None:
                await self._pty.write(payload)
            elif self._proc.stdin is not None:
                self._proc.stdin.write(payload)
                await self._proc.stdin.drain()
            else:
                raise ValueError("Command was started without stdin")
        except OSError as exc:
            msg = f"Writing to exec in {self.container_id} failed: {exc}"
            raise StreamBrokenError(msg) from exc

    async def close_stdin(self) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            return
        stdin.close()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await stdin.wait_closed()

    async def wait(self, timeout: float | None = None) -> int:
        return await asyncio.wait_for(self._proc.wait(), timeout=timeout)

    async def terminate(self) -> None:
        """Stop the command: SIGTERM, one grace period, then SIGKILL.

        The signals go to the process inside the container as well as to the
        local exec client, which the runtime does not do on its own.
        Idempotent and safe after the command already exited.
        """
        if self._terminated:
            return
        self._terminated = True
        try:
            if self._proc.returncode is None:
                await self._signal("TERM")
                with contextlib.suppress(ProcessLookupError):
                    self._proc.terminate()
                try:
                    await asyncio.wait_for(self._proc.wait(), timeout=self._terminate_grace)
                except TimeoutError:
                    logger.warning(
                        "Exec ignored SIGTERM, killing",
                        container=self.container_id,
                        command=self.command[0],
                    )
                    await self._signal("KILL")
                    with contextlib.suppress(ProcessLookupError):
                        self._proc.kill()
                    await self._proc.wait()
        finally:
            if self._pty is not None:
                self._pty.close()

    async def _signal(self, signal: str) -> None:
        if self._signal_remote is None:
            return
        if self._pid_pending:
            await self._await_remote_pid()
        if self.remote_pid is None:
            logger.warning(
                "No container pid for exec, only the local client is signalled",
                container=self.container_id,
                command=self.command[0],
            )
            return
        await self._signal_remote(self.remote_pid, signal)

    async def _await_remote_pid(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._terminate_grace
        while self._pid_pending and not self._eof:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                self._backlog += await self._read_chunk(min(self._poll_interval, remaining))
            except StreamBrokenError as exc:
                logger.debug("Stream broke before the container pid arrived", err=str(exc))
                return


class ExecutionChannel:
    """Starts commands in session containers through the runtime's exec."""

    def __init__(self, runtime: ContainerRuntime | None = None) -> None:
        s = get_settings()
        self._runtime = runtime or get_runtime()
        self._poll_interval = s.execution.poll_interval
        self._terminate_grace = s.execution.terminate_grace
        self._run_timeout = s.execution.run_timeout
        self._pty_size = (s.execution.pty_columns, s.execution.pty_rows)
        self._max_retries = s.runtime.max_retries
        self._base_retry = s.runtime.base_retry_seconds

    async def _require_running(self, container_id: str) -> None:
        info = await retry_transient(
            lambda: self._runtime.inspect_container(container_id),
            what=f"inspect {container_id}",
            max_retries=self._max_retries,
            base_delay=self._base_retry,
        )
        if info is None:
            raise ContainerNotFoundError(f"Container {container_id} does not exist")
        if not info.running:
            raise ContainerNotFoundError(f"Container {container_id} is not running ({info.state})")

    async def _signal_remote(self, container_id: str, pid: int, signal: str) -> None:
        """Deliver ``signal`` to ``pid`` inside the container. Failures are logged."""
        argv = self._runtime.exec_argv(
            container_id,
            ["sh", "-c", 'kill -s "$1" "$2"', "sh", signal, str(pid)],
            tty=False,
            interactive=False,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("Could not signal exec", container=container_id, pid=pid, err=str(exc))
            return
        try:
            code = await asyncio.wait_for(proc.wait(), timeout=self._terminate_grace)
        except TimeoutError:
            logger.warning("Signalling exec timed out", container=container_id, pid=pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            return
        # non-zero usually means the process already exited
        logger.debug("Exec signalled", container=container_id, pid=pid, signal=signal, code=code)

    async def execute(
        self,
        container_id: str,
        command: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        tty: bool = False,
        stdin: bool = False,
    ) -> ExecutionHandle:
        """Start ``command`` in the container and return its handle immediately."""
        if not command:
            raise ValueError("command must not be empty")
        await self._require_running(container_id)

        signal_remote = functools.partial(self._signal_remote, container_id)
        argv = self._runtime.exec_argv(
            container_id,
            [*_PID_WRAPPER, *command],
            tty=tty,
            interactive=tty or stdin,
            workdir=workdir,
            env=env,
        )
        proc_env = {**os.environ, **env} if env else None

        if tty:
            handle = await self._spawn_tty(container_id, command, argv, proc_env, signal_remote)
        else:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    env=proc_env,
                )
            except OSError as exc:
                raise ExecStartFailedError(f"Could not start {argv[0]}: {exc}") from exc
            assert proc.stdout is not None
            handle = ExecutionHandle(
                container_id=container_id,
                command=command,
                proc=proc,
                stream=proc.stdout,
                poll_interval=self._poll_interval,
                terminate_grace=self._terminate_grace,
                signal_remote=signal_remote,
            )

        logger.debug(
            "Exec started",
            container=container_id,
            command=command[0],
            tty=tty,
            pid=handle.pid,
        )
        return handle

    async def _spawn_tty(
        self,
        container_id: str,
        command: list[str],
        argv: list[str],
        proc_env: dict[str, str] | None,
        signal_remote: Callable[[int, str], Awaitable[None]],
    ) -> ExecutionHandle:
        master, slave = open_pty(*self._pty_size)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                env=proc_env,
                start_new_session=True,
            )
        except OSError as exc:
            os.close(master)
            raise ExecStartFailedError(f"Could not start {argv[0]}: {exc}") from exc
        finally:
            # the child holds its own copy; ours would keep EOF from ever arriving
            os.close(slave)
        pty = PtyStream(master)
        return ExecutionHandle(
            container_id=container_id,
            command=command,
            proc=proc,
            stream=pty.reader,
            pty=pty,
            poll_interval=self._poll_interval,
            terminate_grace=self._terminate_grace,
            signal_remote=signal_remote,
        )

    async def run(
        self,
        container_id: str,
        command: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        stdin_data: str | bytes | None = None,
        timeout: float | None = None,
        check: bool = False,
    ) -> ExecResult:
        """Run a command to completion and return its exit code and output.

        Raises TimeoutError when the overall deadline passes; that is never
        reported as a container failure.
        """
        timeout = timeout or self._run_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        handle = await self.execute(
            container_id, command, workdir=workdir, env=env, stdin=stdin_data is not None
        )
        try:
            if stdin_data is not None:
                await handle.write(stdin_data)
                await handle.close_stdin()
            output = await handle.read_to_end(timeout)
            exit_code = await handle.wait(timeout=max(deadline - loop.time(), 0.1))
        finally:
            await handle.terminate()

        _raise_for_exec_failure(container_id, command, exit_code, output)
        result = ExecResult(exit_code=exit_code, output=output)
        if check and not result.ok:
            raise CommandFailedError(command, exit_code, output)
        return result


def _raise_for_exec_failure(
    container_id: str,
    command: list[str],
    exit_code: int,
    output: str,
) -> None:
    """Tell "the command ran and failed" apart from "the command never ran"."""
    if exit_code == 0:
        return
    lowered = output.lower()
    if any(m in lowered for m in _GONE_MARKERS) and "error response from daemon" in lowered:
        raise ContainerNotFoundError(f"Container {container_id} went away: {output.strip()}")
    if exit_code in _START_FAILURE_CODES and any(m in lowered for m in _START_FAILURE_MARKERS):
        msg = f"Could not run {command[0]} in {container_id}: {output.strip()}"
        raise ExecStartFailedError(msg)
