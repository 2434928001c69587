"""Command worker — delivers stream commands to incident workflows, at least once."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from orchestrator.config import settings
from orchestrator.errors import IncidentNotFound, InvalidCommand, TerminalStateViolation
from orchestrator.incident.models import parse_command
from orchestrator.incident.registry import IncidentRegistry
from orchestrator.queue.redis_client import COMMAND_STREAM, CONSUMER_GROUP

logger = logging.getLogger("orchestrator.queue.worker")


@dataclass
class _Lane:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class CommandWorker:
    """Consumes the command stream and signals the owning incident workflow.

    A message is acked only once the workflow has recorded the command (or the
    command is undeliverable), so a crash leaves it pending and it is re-read
    from this consumer's backlog on the next start. The message id travels
    with the command, so a workflow that already recorded it skips the
    redelivery. Commands for one service are handed over strictly in stream order.
    """

    def __init__(
        self,
        registry: IncidentRegistry,
        redis: aioredis.Redis,
        consumer_name: str = settings.consumer_name,
    ) -> None:
        self._registry = registry
        self._redis = redis
        self._consumer = consumer_name
        self._lanes: dict[str, _Lane] = {}
        self._inflight: set[asyncio.Task] = set()
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        try:
            await self._redis.xgroup_create(COMMAND_STREAM, CONSUMER_GROUP, id="0", mkstream=True)
            logger.info("Created consumer group '%s' on stream '%s'", CONSUMER_GROUP, COMMAND_STREAM)
        except ResponseError:
            logger.debug("Consumer group '%s' already exists", CONSUMER_GROUP)

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Command worker started: consumer=%s", self._consumer)

    async def stop(self) -> None:
        self._running = False
        tasks = [t for t in (self._task, *self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Command worker stopped")

    async def _poll_loop(self) -> None:
        """Main loop: replay this consumer's pending backlog, then read new commands."""
        await self._drain_pending()

        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    CONSUMER_GROUP, self._consumer,
                    {COMMAND_STREAM: ">"},
                    count=10,
                    block=2000,
                )

                if not messages:
                    continue

                for _stream, entries in messages:
                    for msg_id, data in entries:
                        task = asyncio.create_task(self._handle(msg_id, data))
                        self._inflight.add(task)
                        task.add_done_callback(self._inflight.discard)

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Command poll error — retrying in 5s")
                await asyncio.sleep(5)

    async def _drain_pending(self) -> None:
        last_id = "0"
        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    CONSUMER_GROUP, self._consumer,
                    {COMMAND_STREAM: last_id},
                    count=50,
                )
            except Exception:
                logger.exception("Failed to read pending commands, skipping backlog")
                return

            entries = messages[0][1] if messages else []
            if not entries:
                return

            logger.info("Redelivering %d pending command(s)", len(entries))
            for msg_id, data in entries:
                last_id = msg_id
                await self._handle(msg_id, data)

    async def _handle(self, msg_id: str, data: dict | None) -> None:
        data = data or {}
        service = data.get("service", "")
        kind = data.get("kind", "")

        try:
            if not service:
                raise InvalidCommand("Command message has no service")
            command = parse_command(kind, json.loads(data.get("payload") or "{}"))
        except (InvalidCommand, ValueError) as exc:
            logger.error("Dropping malformed command msg=%s: %s", msg_id, exc)
            await self._ack(msg_id)
            return

        lane = self._lanes.get(service)
        if lane is None:
            lane = self._lanes[service] = _Lane()
        lane.users += 1
        try:
            async with lane.lock:
                try:
                    await self._registry.signal(service, command, delivery_id=msg_id)
                except (IncidentNotFound, TerminalStateViolation) as exc:
                    logger.warning("Undeliverable %s command for service=%s: %s", kind, service, exc)
                except Exception:
                    logger.exception(
                        "Command delivery failed: service=%s kind=%s msg=%s (left pending)",
                        service, kind, msg_id,
                    )
                    return

                await self._ack(msg_id)
        finally:
            lane.users -= 1
            if lane.users == 0:
                del self._lanes[service]

    async def _ack(self, msg_id: str) -> None:
        try:
            await self._redis.xack(COMMAND_STREAM, CONSUMER_GROUP, msg_id)
        except Exception:
            logger.exception("Failed to ack command msg=%s, it will be redelivered", msg_id)
            return
        logger.debug("Command acknowledged: %s", msg_id)
