"""Shared utility functions.

Small helpers used across multiple modules: atomic file writing,
fire-and-forget tasks that log their failures, per-key async locks, and
bounded retry of transient infrastructure errors.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Hashable
from pathlib import Path
from typing import Any, TypeVar

from tenantbox.errors import TransientInfraError
from tenantbox.logger import logger

T = TypeVar("T")


def write_text_atomic(path: Path, text: str, *, mode: int = 0o600) -> None:
    """Write a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content, never a
    partial write. The temp file lives in the target directory so the rename
    never crosses filesystems. Creates parent directories if missing.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()
        raise


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for work nobody awaits
    (auth supervisors, device-flow polling, image pulls) where failures must
    still appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work in a done-callback; pass exc_info explicitly
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


class KeyedLocks:
    """One asyncio.Lock per key, created on demand and dropped when idle.

    Operations on different keys never contend.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


async def retry_transient(
    op: Callable[[], Awaitable[T]],
    *,
    what: str,
    max_retries: int,
    base_delay: float,
) -> T:
    """Run ``op``, retrying TransientInfraError with exponential backoff.

    Delay before retry *n* is ``base_delay * 2**(n-1)``. Any other exception
    propagates immediately; after ``max_retries`` retries the last transient
    error is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await op()
        except TransientInfraError as exc:
            attempt += 1
            if attempt > max_retries:
                logger.error("Max retries exceeded", what=what, retries=max_retries, err=str(exc))
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Transient failure, retrying",
                what=what,
                attempt=attempt,
                delay_seconds=delay,
                err=str(exc),
            )
            await asyncio.sleep(delay)
