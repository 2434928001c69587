"""Incident endpoints: start, commands and state queries."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from orchestrator.incident.models import Ack, AddAlert, IncidentState, NonEmptyStr, Resolve
from orchestrator.incident.registry import IncidentRegistry
from orchestrator.queue.producer import enqueue_command

logger = logging.getLogger("orchestrator.ingestion")
router = APIRouter(prefix="/incidents", tags=["incidents"])


class StartRequest(BaseModel):
    service: NonEmptyStr


def get_registry(request: Request) -> IncidentRegistry:
    return request.app.state.registry


async def _submit(
    registry: IncidentRegistry,
    service: str,
    command: AddAlert | Ack | Resolve,
    request_id: str | None,
) -> dict:
    registry.get(service)  # raises IncidentNotFound / TerminalStateViolation

    msg_id = await enqueue_command(service, command, request_id=request_id)
    return {
        "service": service,
        "command": command.kind,
        "enqueued": msg_id is not None,
        "stream_msg": msg_id,
    }


@router.post("")
async def start_incident(body: StartRequest, registry: IncidentRegistry = Depends(get_registry)):
    """Start an incident for a service, or attach to the one already running."""
    result = await registry.start(body.service)
    logger.info(
        "Start request: service=%s run=%s attached=%s",
        body.service, result.workflow.run_id, result.attached,
    )
    return {
        "service": body.service,
        "run_id": result.workflow.run_id,
        "attached": result.attached,
    }


@router.post("/{service}/add-alert", status_code=202)
async def add_alert(
    service: str,
    command: AddAlert,
    idempotency_key: str | None = Header(default=None),
    registry: IncidentRegistry = Depends(get_registry),
):
    return await _submit(registry, service, command, idempotency_key)


@router.post("/{service}/ack", status_code=202)
async def ack(
    service: str,
    command: Ack,
    idempotency_key: str | None = Header(default=None),
    registry: IncidentRegistry = Depends(get_registry),
):
    return await _submit(registry, service, command, idempotency_key)


@router.post("/{service}/resolve", status_code=202)
async def resolve(
    service: str,
    command: Resolve,
    idempotency_key: str | None = Header(default=None),
    registry: IncidentRegistry = Depends(get_registry),
):
    return await _submit(registry, service, command, idempotency_key)


@router.get("/{service}/state", response_model=IncidentState)
async def state(service: str, registry: IncidentRegistry = Depends(get_registry)):
    return await registry.query(service)
