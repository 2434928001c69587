"""Ordered, append-only event log per incident, replayed after a restart."""

from __future__ import annotations

import logging
from typing import Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel

from orchestrator.config import settings
from orchestrator.incident.models import Event, HistoryEntry

logger = logging.getLogger("orchestrator.history")


class HistoryStore(Protocol):
    async def append(self, service: str, event, delivery_id: str | None = None) -> HistoryEntry: ...

    async def load(self, service: str) -> list[HistoryEntry]: ...

    async def clear(self, service: str) -> None: ...

    async def services(self) -> list[str]: ...


class InMemoryHistory:
    """Process-local log, used for tests and single-process development."""

    def __init__(self) -> None:
        self._logs: dict[str, list[HistoryEntry]] = {}

    async def append(self, service: str, event, delivery_id: str | None = None) -> HistoryEntry:
        log = self._logs.setdefault(service, [])
        entry = HistoryEntry(seq=len(log), event=event, delivery_id=delivery_id)
        log.append(entry)
        return entry

    async def load(self, service: str) -> list[HistoryEntry]:
        return list(self._logs.get(service, []))

    async def clear(self, service: str) -> None:
        self._logs.pop(service, None)

    async def services(self) -> list[str]:
        return sorted(self._logs)


class _StoredEvent(BaseModel):
    event: Event
    delivery_id: str | None = None


class RedisHistory:
    """One Redis list per service; the list index is the entry's sequence number.

    Known services are tracked in a set kept outside the log key prefix, so no
    service name can collide with it.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = settings.history_prefix,
        index_key: str = settings.history_index_key,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._index_key = index_key

    def _key(self, service: str) -> str:
        return f"{self._prefix}{service}"

    async def append(self, service: str, event, delivery_id: str | None = None) -> HistoryEntry:
        record = _StoredEvent(event=event, delivery_id=delivery_id)
        length = await self._redis.rpush(self._key(service), record.model_dump_json(exclude_none=True))
        await self._redis.sadd(self._index_key, service)
        return HistoryEntry(seq=length - 1, event=event, delivery_id=delivery_id)

    async def load(self, service: str) -> list[HistoryEntry]:
        raw_events = await self._redis.lrange(self._key(service), 0, -1)
        entries = []
        for seq, raw in enumerate(raw_events):
            record = _StoredEvent.model_validate_json(raw)
            entries.append(HistoryEntry(seq=seq, event=record.event, delivery_id=record.delivery_id))
        return entries

    async def clear(self, service: str) -> None:
        await self._redis.delete(self._key(service))
        await self._redis.srem(self._index_key, service)
        logger.info("History cleared for service=%s", service)

    async def services(self) -> list[str]:
        return sorted(await self._redis.smembers(self._index_key))
