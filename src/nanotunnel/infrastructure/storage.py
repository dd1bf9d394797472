"""Storage abstractions and Redis implementation for repositories."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, List, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import NoScriptError, RedisError

from ..domain.errors import InfrastructureError
from .database import DatabaseClient


class KeyValueStore(ABC):
    """Abstract key-value store with minimal operations used by repositories."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> int:
        pass

    @abstractmethod
    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        pass

    @abstractmethod
    async def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        pass

    @abstractmethod
    async def register_script(self, name: str, script: str) -> str:
        """Load a Lua script server-side and remember it under ``name``."""
        pass

    @abstractmethod
    async def run_script(self, name: str, keys: List[str], args: List[str]) -> Any:
        """Run a previously registered script atomically."""
        pass


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed implementation of KeyValueStore.

    Redis failures surface as ``InfrastructureError``.
    """

    def __init__(self, db_client: DatabaseClient):
        self._db_client = db_client
        self._scripts: dict[str, str] = {}
        self._shas: dict[str, str] = {}

    @asynccontextmanager
    async def _connection(self) -> AsyncGenerator[redis.Redis, None]:
        try:
            async with self._db_client.get_connection() as conn:
                yield conn
        except RedisError as e:
            raise InfrastructureError(f"Storage unavailable: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        async with self._connection() as conn:
            return await conn.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._connection() as conn:
            await conn.set(key, value)

    async def delete(self, key: str) -> int:
        async with self._connection() as conn:
            return await conn.delete(key)

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        async with self._connection() as conn:
            return await conn.zadd(key, mapping)

    async def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        async with self._connection() as conn:
            return await conn.zrevrange(key, start, end)

    async def register_script(self, name: str, script: str) -> str:
        async with self._connection() as conn:
            sha = await conn.script_load(script)
        self._scripts[name] = script
        self._shas[name] = sha
        return sha

    async def run_script(self, name: str, keys: List[str], args: List[str]) -> Any:
        if name not in self._shas:
            raise ValueError(f"Script '{name}' not registered")
        async with self._connection() as conn:
            try:
                return await conn.evalsha(self._shas[name], len(keys), *keys, *args)
            except NoScriptError:
                # Script cache was flushed (e.g. Redis restart); reload once.
                self._shas[name] = await conn.script_load(self._scripts[name])
                return await conn.evalsha(self._shas[name], len(keys), *keys, *args)
