"""Pseudo-terminal plumbing for interactive execs.

The container CLI gets the slave side as its stdin/stdout/stderr, which makes
``docker exec -t`` allocate a terminal inside the container. The host keeps
the master side and pumps it into an ``asyncio.StreamReader`` via
``loop.add_reader``.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import os
import pty
import struct
import termios

from tenantbox.logger import logger


def open_pty(columns: int, rows: int) -> tuple[int, int]:
    """Open a pty pair sized ``columns`` x ``rows``; master is non-blocking."""
    master, slave = pty.openpty()
    fcntl.ioctl(slave, termios.TIOCSWINSZ, struct.pack("HHHH", rows, columns, 0, 0))
    os.set_blocking(master, False)
    return master, slave


class PtyStream:
    """Async reader/writer over a pty master file descriptor."""

    def __init__(self, master_fd: int) -> None:
        self._fd = master_fd
        self._loop = asyncio.get_running_loop()
        self.reader = asyncio.StreamReader()
        self._reading = True
        self._closed = False
        self._loop.add_reader(master_fd, self._on_readable)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, 65536)
        except BlockingIOError:
            return
        except OSError as exc:
            # Linux reports EIO on the master once every slave fd is closed
            if exc.errno == errno.EIO:
                self._stop_reading()
            else:
                self._stop_reading(exc)
            return
        if not data:
            self._stop_reading()
            return
        self.reader.feed_data(data)

    def _stop_reading(self, exc: Exception | None = None) -> None:
        if not self._reading:
            return
        self._reading = False
        self._loop.remove_reader(self._fd)
        if exc is not None:
            logger.debug("pty read failed", err=str(exc))
            self.reader.set_exception(exc)
        else:
            self.reader.feed_eof()

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise BrokenPipeError("pty is closed")
        view = memoryview(data)
        while view:
            try:
                written = os.write(self._fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    def close(self) -> None:
        if self._closed:
            return
        self._stop_reading()
        self._closed = True
        os.close(self._fd)
