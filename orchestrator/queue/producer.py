"""Push validated incident commands onto the Redis stream."""

from __future__ import annotations

import logging

from orchestrator.config import settings
from orchestrator.incident.models import Ack, AddAlert, Resolve
from orchestrator.queue.redis_client import COMMAND_STREAM, REQUEST_DEDUP_PREFIX, get_redis
from orchestrator.telemetry.metrics import commands_enqueued_total

logger = logging.getLogger("orchestrator.queue")


async def enqueue_command(
    service: str,
    command: AddAlert | Ack | Resolve,
    request_id: str | None = None,
) -> str | None:
    """Append a command to the stream for durable, at-least-once delivery.

    When the caller supplies a ``request_id``, a retried request carrying the
    same id within the dedup window is dropped. Returns the stream message ID,
    or None if the request was a duplicate.
    """
    r = await get_redis()

    if request_id:
        first_seen = await r.set(
            f"{REQUEST_DEDUP_PREFIX}{service}:{request_id}", "1",
            nx=True,
            ex=settings.dedup_window_seconds,
        )
        if not first_seen:
            logger.info(
                "Command deduplicated (request seen within %ds): service=%s kind=%s request=%s",
                settings.dedup_window_seconds, service, command.kind, request_id,
            )
            return None

    msg_id = await r.xadd(COMMAND_STREAM, {
        "service": service,
        "kind": command.kind,
        "payload": command.model_dump_json(),
    })
    commands_enqueued_total.labels(kind=command.kind).inc()

    logger.info("Command enqueued: service=%s kind=%s stream_msg=%s", service, command.kind, msg_id)
    return msg_id
