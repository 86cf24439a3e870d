"""
Per-key locks used by the orchestrator.

Two disciplines are needed: reconfiguration queues and runs serially
(``with_lock``), rescans fail fast when one is already running (``try_lock``).
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import LockContention

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLock:
    """A set of independent asyncio locks addressed by key."""

    def __init__(self, domain: str):
        self.domain = domain
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def with_lock(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Wait for the lock on ``key`` and run ``fn`` while holding it."""
        lock = self._lock_for(key)
        if lock.locked():
            logger.debug(f"[{key}] waiting for {self.domain} lock")
        async with lock:
            return await fn()

    async def try_lock(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under the lock on ``key`` or raise if it is already held."""
        lock = self._lock_for(key)
        if lock.locked():
            raise LockContention(
                f"{self.domain} already in progress for source {key}", source_id=key
            )
        async with lock:
            return await fn()


class ExclusionRegistry:
    """Maps a source type to the id of the instance currently running a cycle.

    Instances of the same type take turns. An instance that asks again while it
    is itself the holder is rejected instead of deadlocking on its own lock.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, str] = {}

    def holder(self, key: str) -> Optional[str]:
        return self._holders.get(key)

    @asynccontextmanager
    async def hold(self, key: str, holder: str) -> AsyncIterator[None]:
        if self._holders.get(key) == holder:
            raise LockContention(
                f"source {holder} is already running a {key} cycle", source_id=holder
            )

        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            logger.info(
                f"[{holder}] waiting for {self._holders.get(key)} to finish its {key} cycle"
            )
        async with lock:
            self._holders[key] = holder
            try:
                yield
            finally:
                self._holders.pop(key, None)
