"""Per-channel mutual exclusion for the request-handling event loop."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..domain.errors import InfrastructureError


class KeyedLock:
    """One ``asyncio.Lock`` per key, created on demand and dropped when idle.

    Operations on the same key run one at a time in arrival order; different
    keys never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(
        self, key: str, timeout: Optional[float] = None
    ) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise InfrastructureError(
                    f"Timed out after {timeout}s waiting for channel lock",
                    channel_id=key,
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
