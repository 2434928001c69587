"""Incident Orchestrator — FastAPI service entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from orchestrator.config import settings
from orchestrator.errors import (
    IncidentNotFound,
    IncidentStartupError,
    InvalidCommand,
    TerminalStateViolation,
)
from orchestrator.history.store import RedisHistory
from orchestrator.incident.registry import IncidentRegistry
from orchestrator.ingestion.receiver import router as incident_router
from orchestrator.notify.dispatcher import NotificationDispatcher, RetryPolicy
from orchestrator.notify.ledger import RedisLedger
from orchestrator.notify.transports import LogTransport, NotificationTransport, WebhookTransport
from orchestrator.queue.redis_client import COMMAND_STREAM, CONSUMER_GROUP, close_redis, get_redis
from orchestrator.queue.worker import CommandWorker
from orchestrator.telemetry.logging import setup_logging
from orchestrator.telemetry.metrics import get_metrics
from orchestrator.telemetry.tracing import setup_tracing

logger = logging.getLogger("orchestrator")


def _build_transport() -> NotificationTransport:
    if settings.notify_webhook_url:
        return WebhookTransport(settings.notify_webhook_url)
    return LogTransport()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.otlp_endpoint)
    setup_tracing(settings.otlp_endpoint)
    logger.info("Initializing incident orchestrator...")

    # Redis — verify connectivity
    r = await get_redis()
    await r.ping()
    logger.info("Redis connected: %s", settings.redis_url)

    transport = _build_transport()
    dispatcher = NotificationDispatcher(transport, RedisLedger(r), RetryPolicy.from_settings())
    registry = IncidentRegistry(RedisHistory(r), dispatcher)
    app.state.registry = registry

    # Resume incidents left unfinished by a previous process
    await registry.recover()

    worker = CommandWorker(registry, r)
    app.state.worker = worker
    await worker.start()

    logger.info("Incident orchestrator ready — listening on %s:%d", settings.host, settings.port)

    yield

    await worker.stop()
    await registry.shutdown()
    await transport.close()
    await close_redis()
    logger.info("Incident orchestrator shut down")


app = FastAPI(
    title="Incident Orchestrator",
    description="Durable incident lifecycle tracking with automatic escalation",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(incident_router)


@app.exception_handler(IncidentNotFound)
async def _not_found(request: Request, exc: IncidentNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(TerminalStateViolation)
async def _terminated(request: Request, exc: TerminalStateViolation):
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(InvalidCommand)
async def _invalid(request: Request, exc: InvalidCommand):
    return JSONResponse(status_code=422, content={"error": str(exc)})


@app.exception_handler(IncidentStartupError)
async def _startup_failed(request: Request, exc: IncidentStartupError):
    logger.error("Incident startup failed: %s", exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.get("/health")
async def health():
    registry: IncidentRegistry | None = getattr(app.state, "registry", None)
    worker: CommandWorker | None = getattr(app.state, "worker", None)
    return {
        "status": "healthy",
        "live_incidents": registry.live_services if registry else [],
        "worker_running": worker is not None and worker.running,
    }


@app.get("/queue/stats")
async def queue_stats():
    """Show current command stream depth and consumer group info."""
    r = await get_redis()
    stream_len = await r.xlen(COMMAND_STREAM)

    try:
        groups = await r.xinfo_groups(COMMAND_STREAM)
    except Exception:
        groups = []

    group_info = {}
    for g in groups:
        if g.get("name") == CONSUMER_GROUP:
            group_info = {
                "pending": g.get("pending", 0),
                "consumers": g.get("consumers", 0),
                "last_delivered_id": g.get("last-delivered-id", ""),
            }
            break

    return {
        "stream_length": stream_len,
        "consumer_group": group_info,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)


def run() -> None:
    import uvicorn

    uvicorn.run("orchestrator.main:app", host=settings.host, port=settings.port)
