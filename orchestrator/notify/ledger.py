"""Delivery ledger: which notification keys already reached the channel."""

from __future__ import annotations

from typing import Protocol

import redis.asyncio as aioredis

from orchestrator.config import settings

NOTIFIED_PREFIX = "incident:notified:"


class DeliveryLedger(Protocol):
    async def seen(self, key: str) -> bool: ...

    async def record(self, key: str) -> None: ...


class InMemoryLedger:
    def __init__(self) -> None:
        self.keys: set[str] = set()

    async def seen(self, key: str) -> bool:
        return key in self.keys

    async def record(self, key: str) -> None:
        self.keys.add(key)


class RedisLedger:
    """Keys expire after the dedup window, like the alert dedup keys in the producer."""

    def __init__(self, redis: aioredis.Redis, window_seconds: int = settings.dedup_window_seconds) -> None:
        self._redis = redis
        self._window = window_seconds

    async def seen(self, key: str) -> bool:
        return bool(await self._redis.exists(f"{NOTIFIED_PREFIX}{key}"))

    async def record(self, key: str) -> None:
        await self._redis.set(f"{NOTIFIED_PREFIX}{key}", "1", nx=True, ex=self._window)
