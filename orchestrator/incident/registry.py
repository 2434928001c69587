"""Incident registry, one live workflow per service."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from orchestrator.config import settings
from orchestrator.errors import (
    IncidentNotFound,
    IncidentStartupError,
    OrchestratorError,
    TerminalStateViolation,
)
from orchestrator.history.store import HistoryStore
from orchestrator.incident.machine import Replay, replay
from orchestrator.incident.models import Ack, AddAlert, IncidentState, IncidentStatus, Resolve
from orchestrator.incident.query import QueryResponder
from orchestrator.incident.timers import AsyncioTimerDriver, TimerDriver
from orchestrator.incident.workflow import IncidentWorkflow, deliver_notifications
from orchestrator.notify.dispatcher import NotificationDispatcher
from orchestrator.telemetry.metrics import incidents_started_total

logger = logging.getLogger("orchestrator.incident.registry")


@dataclass
class StartResult:
    workflow: IncidentWorkflow
    attached: bool


class IncidentRegistry:
    """Creates, attaches to and tears down incident workflows.

    A start request for a service with a live workflow attaches to it. A
    service whose recorded incident is unfinished is resumed from its log; one
    whose recorded incident is resolved starts a fresh run.
    """

    def __init__(
        self,
        history: HistoryStore,
        dispatcher: NotificationDispatcher,
        *,
        escalation_timeout: float | None = None,
        timer_driver_factory: Callable[[], TimerDriver] = AsyncioTimerDriver,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._history = history
        self._dispatcher = dispatcher
        self._escalation_timeout = (
            settings.escalation_timeout_seconds if escalation_timeout is None else escalation_timeout
        )
        self._timer_driver_factory = timer_driver_factory
        self._clock = clock
        self._live: dict[str, IncidentWorkflow] = {}
        self._queries: dict[str, QueryResponder] = {}
        self._finished: dict[str, IncidentState] = {}
        self._lock = asyncio.Lock()

    @property
    def live_services(self) -> list[str]:
        return sorted(self._live)

    def get(self, service: str) -> IncidentWorkflow:
        workflow = self._live.get(service)
        if workflow is None or workflow.done:
            if service in self._finished:
                raise TerminalStateViolation(service)
            raise IncidentNotFound(service)
        return workflow

    async def start(self, service: str) -> StartResult:
        async with self._lock:
            live = self._live.get(service)
            if live is not None:
                if not live.done:
                    logger.info("Attaching to running incident: service=%s run=%s", service, live.run_id)
                    return StartResult(workflow=live, attached=True)
                # A resolved loop may still be sending its last notifications.
                await live.wait_closed()

            entries = await self._history.load(service)
            if entries:
                restored = replay(service, entries, self._escalation_timeout)
                if restored.machine.resolved:
                    await self._flush_resolved(service, restored)
                    await self._history.clear(service)
                    entries = []
            self._finished.pop(service, None)

            workflow = IncidentWorkflow(
                service,
                self._history,
                self._dispatcher,
                escalation_timeout=self._escalation_timeout,
                timer_driver=self._timer_driver_factory(),
                clock=self._clock,
                register_query=self._register_query,
                on_closed=self._on_closed,
            )
            try:
                await workflow.start(entries)
            except IncidentStartupError:
                raise
            except OrchestratorError as exc:
                self._queries.pop(service, None)
                raise IncidentStartupError(f"Failed to start incident for {service}: {exc}") from exc
            except Exception as exc:
                self._queries.pop(service, None)
                logger.exception("Incident startup failed: service=%s", service)
                raise IncidentStartupError(f"Failed to start incident for {service}") from exc

            self._live[service] = workflow
            if not entries:
                incidents_started_total.inc()
            return StartResult(workflow=workflow, attached=bool(entries))

    async def signal(
        self, service: str, command: AddAlert | Ack | Resolve, delivery_id: str | None = None
    ) -> int:
        return await self.get(service).signal(command, delivery_id=delivery_id)

    async def query(self, service: str) -> IncidentState:
        responder = self._queries.get(service)
        if responder is not None:
            return responder.query()
        if service in self._finished:
            return self._finished[service].model_copy(deep=True)

        entries = await self._history.load(service)
        if not entries:
            raise IncidentNotFound(service)
        return replay(service, entries, self._escalation_timeout).machine.state

    async def recover(self) -> list[str]:
        """Resume every unfinished incident found in the history store."""
        resumed = []
        for service in await self._history.services():
            try:
                entries = await self._history.load(service)
                if not entries:
                    continue
                restored = replay(service, entries, self._escalation_timeout)
                if restored.machine.resolved:
                    await self._flush_resolved(service, restored)
                    self._finished[service] = restored.machine.state
                    continue
                await self.start(service)
                resumed.append(service)
            except Exception:
                logger.exception("Failed to resume incident: service=%s", service)
        if resumed:
            logger.info("Resumed %d incident(s): %s", len(resumed), ", ".join(resumed))
        return resumed

    async def shutdown(self) -> None:
        for workflow in list(self._live.values()):
            await workflow.stop()

    async def _flush_resolved(self, service: str, restored: Replay) -> None:
        """Send what a resolved incident recorded but never got out before a crash."""
        if not restored.pending:
            return
        logger.info(
            "Sending %d notification(s) left over from resolved incident: service=%s",
            len(restored.pending), service,
        )
        await deliver_notifications(
            service, restored.machine.run_id, restored.pending, self._history, self._dispatcher
        )

    def _register_query(self, service: str, responder: QueryResponder) -> None:
        if service in self._queries:
            raise IncidentStartupError(f"Query handler already registered for service: {service}")
        self._queries[service] = responder

    def _on_closed(self, workflow: IncidentWorkflow) -> None:
        service = workflow.service
        if self._live.get(service) is workflow:
            del self._live[service]
        if self._queries.get(service) is workflow.responder:
            del self._queries[service]

        state = workflow.query()
        if state.status == IncidentStatus.RESOLVED:
            self._finished[service] = state
