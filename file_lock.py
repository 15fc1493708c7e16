"""
file_lock.py — in-process keyed mutex with a FIFO wait queue and timeouts.

Guards read-modify-write access to shared files (in practice: the single
products JSON file).  Purely cooperative asyncio gating, no OS-level locking:
it serialises coroutines inside one process and offers no protection when two
processes share the same file.

Usage:
    locks = FileLockManager()
    async with locks.hold(path, timeout=5):
        ...                          # exclusive section

acquire() / release() are also public for callers that cannot use the
context manager.  Every successful acquire() must be paired with exactly one
release(), on every exit path, or later acquirers wait until they time out.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECS = 5.0


class LockTimeoutError(TimeoutError):
    """Raised when a waiter is not granted the lock before its deadline."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s waiting for lock on {key}")
        self.key = key
        self.timeout = timeout


@dataclass(eq=False)
class _Waiter:
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


class FileLockManager:
    """Per-key exclusive lock.  Waiters are granted strictly in arrival order."""

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._queues: dict[str, deque[_Waiter]] = {}

    # ── Introspection ─────────────────────────────────────────────────────────

    def is_locked(self, key) -> bool:
        return str(key) in self._held

    def queue_length(self, key=None) -> int:
        """Waiters queued on *key*, or across all keys when key is None."""
        if key is None:
            return sum(len(q) for q in self._queues.values())
        return len(self._queues.get(str(key), ()))

    # ── Acquire / release ─────────────────────────────────────────────────────

    async def acquire(self, key, timeout: float = DEFAULT_TIMEOUT_SECS) -> None:
        """
        Take the lock for *key*, waiting at most *timeout* seconds.

        Returns immediately when the key is free.  Otherwise the caller joins
        the back of the queue; it is either handed the lock by release() or
        removed from the queue when its deadline fires (LockTimeoutError).
        """
        key = str(key)
        if key not in self._held:
            self._held.add(key)
            return

        loop = asyncio.get_running_loop()
        waiter = _Waiter(future=loop.create_future())
        queue = self._queues.setdefault(key, deque())
        waiter.timer = loop.call_later(timeout, self._expire, key, waiter, timeout)
        queue.append(waiter)
        logger.debug("Lock busy for %s — queued (position %d)", key, len(queue))

        try:
            await waiter.future
        except asyncio.CancelledError:
            waiter.timer.cancel()
            self._discard(key, waiter)
            # release() may have handed us the lock in the same tick we were
            # cancelled; pass it on instead of leaking it.
            if (
                waiter.future.done()
                and not waiter.future.cancelled()
                and waiter.future.exception() is None
            ):
                self.release(key)
            raise

    def release(self, key) -> None:
        """
        Give up the lock for *key*.  If anyone is waiting, ownership moves
        straight to the oldest waiter and the key stays held.
        """
        key = str(key)
        if key not in self._held:
            logger.warning("release() called for %s which is not locked", key)
            return

        queue = self._queues.get(key)
        while queue:
            waiter = queue.popleft()
            if waiter.timer is not None:
                waiter.timer.cancel()
            if not waiter.future.done():
                waiter.future.set_result(None)
                if not queue:
                    del self._queues[key]
                return

        self._held.discard(key)
        self._queues.pop(key, None)

    @asynccontextmanager
    async def hold(self, key, timeout: float = DEFAULT_TIMEOUT_SECS) -> AsyncIterator[None]:
        await self.acquire(key, timeout)
        try:
            yield
        finally:
            self.release(key)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _expire(self, key: str, waiter: _Waiter, timeout: float) -> None:
        if waiter.future.done():
            return
        self._discard(key, waiter)
        logger.warning("Lock wait on %s timed out after %gs", key, timeout)
        waiter.future.set_exception(LockTimeoutError(key, timeout))

    def _discard(self, key: str, waiter: _Waiter) -> None:
        queue = self._queues.get(key)
        if queue is None:
            return
        try:
            queue.remove(waiter)
        except ValueError:
            pass
        if not queue:
            del self._queues[key]
