"""Incident workflow — the per-service event loop around the state machine.

One asyncio task per incident. The task waits on four sources (add-alert,
ack and resolve commands, plus escalation timer firings) and handles exactly
one event per iteration. Every event is appended to the history before it is
applied, so a restarted process rebuilds the same state by replaying the log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

from opentelemetry import trace

from orchestrator.config import settings
from orchestrator.errors import TerminalStateViolation
from orchestrator.history.store import HistoryStore
from orchestrator.incident.machine import IncidentMachine, replay
from orchestrator.incident.models import (
    Ack,
    AddAlert,
    HistoryEntry,
    IncidentState,
    NotificationRequest,
    NotificationsFlushed,
    Resolve,
    Started,
    TimerArmed,
    TimerFired,
)
from orchestrator.incident.query import QueryResponder
from orchestrator.incident.timers import AsyncioTimerDriver, TimerDriver
from orchestrator.notify.dispatcher import NotificationDispatcher, notification_key
from orchestrator.telemetry.metrics import (
    escalations_total,
    incident_events_total,
    incidents_active,
    stale_timer_firings_total,
)

logger = logging.getLogger("orchestrator.incident")
tracer = trace.get_tracer(__name__)

# Drain order when several sources are ready at the same wait point.
CHANNEL_PRIORITY = ("add-alert", "ack", "resolve", "timer")


@dataclass
class _Delivery:
    event: AddAlert | Ack | Resolve | TimerFired
    persisted: asyncio.Future | None = None
    ticket: TimerArmed | None = None
    delivery_id: str | None = None


async def deliver_notifications(
    service: str,
    run_id: str | None,
    notes: list[tuple[int, NotificationRequest]],
    history: HistoryStore,
    dispatcher: NotificationDispatcher,
) -> None:
    """Dispatch notifications keyed by their log position, then record the flush marker."""
    if not notes:
        return

    for seq, note in notes:
        key = notification_key(note, scope=f"{run_id}:{seq}")
        try:
            await dispatcher.dispatch(note, key=key)
        except Exception:
            logger.exception("Notification dispatch crashed: service=%s", service)

    try:
        await history.append(service, NotificationsFlushed(through_seq=notes[-1][0]))
    except Exception:
        logger.exception("Failed to record notification flush for %s", service)


class IncidentWorkflow:
    def __init__(
        self,
        service: str,
        history: HistoryStore,
        dispatcher: NotificationDispatcher,
        *,
        escalation_timeout: float | None = None,
        timer_driver: TimerDriver | None = None,
        clock: Callable[[], float] = time.time,
        history_retry: float | None = None,
        register_query: Callable[[str, QueryResponder], None] | None = None,
        on_closed: Callable[[IncidentWorkflow], None] | None = None,
    ) -> None:
        self.service = service
        self._history = history
        self._dispatcher = dispatcher
        self._escalation_timeout = (
            settings.escalation_timeout_seconds if escalation_timeout is None else escalation_timeout
        )
        self._timers = timer_driver or AsyncioTimerDriver()
        self._clock = clock
        self._history_retry = settings.history_retry_seconds if history_retry is None else history_retry
        self._register_query = register_query
        self._on_closed = on_closed

        self._machine = IncidentMachine(service, self._escalation_timeout)
        self._responder = QueryResponder(self._machine.state)
        self._deliveries: dict[str, int] = {}
        self._channels: dict[str, deque[_Delivery]] = {name: deque() for name in CHANNEL_PRIORITY}
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def run_id(self) -> str | None:
        return self._machine.run_id

    @property
    def done(self) -> bool:
        return self._closed or self._machine.resolved

    @property
    def responder(self) -> QueryResponder:
        return self._responder

    def query(self) -> IncidentState:
        return self._responder.query()

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self, entries: list[HistoryEntry] | None = None) -> None:
        """Replay any recorded history, then begin the event loop.

        With an empty history this is a brand-new incident: a ``Started`` event
        is recorded and the "incident opened" notification is queued.
        """
        if entries is None:
            entries = await self._history.load(self.service)

        restored = replay(self.service, entries, self._escalation_timeout)
        if restored.machine.resolved:
            raise TerminalStateViolation(self.service)
        self._machine = restored.machine
        self._deliveries = dict(restored.deliveries)
        self._responder.publish(self._machine.state)

        if self._register_query is not None:
            self._register_query(self.service, self._responder)

        pending = restored.pending
        if not entries:
            started = Started(service=self.service, run_id=uuid4().hex)
            entry = await self._history.append(self.service, started)
            pending = [(entry.seq, note) for note in self._machine.apply(started)]
            self._responder.publish(self._machine.state)
            logger.info("Incident opened: service=%s run=%s", self.service, started.run_id)
        else:
            logger.info(
                "Incident resumed from %d history entries: service=%s status=%s level=%d",
                len(entries), self.service,
                self._machine.state.status.value, self._machine.state.escalation_level,
            )
            outstanding = self._machine.timers.outstanding
            if outstanding is not None:
                self._schedule(outstanding)

        self._task = asyncio.create_task(self._run(pending), name=f"incident-{self.service}")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def wait_closed(self) -> IncidentState:
        if self._task is not None:
            await asyncio.wait([self._task])
        return self.query()

    # ── Intake ──────────────────────────────────────────────────────

    async def signal(self, command: AddAlert | Ack | Resolve, delivery_id: str | None = None) -> int:
        """Queue a command and wait until it has been recorded in the history.

        ``delivery_id`` identifies the stream message carrying the command; a
        redelivery of a message that is already in the log is not applied again.
        Returns the command's log sequence number.
        """
        if self.done:
            raise TerminalStateViolation(self.service)

        persisted = asyncio.get_running_loop().create_future()
        self._channels[command.kind].append(
            _Delivery(event=command, persisted=persisted, delivery_id=delivery_id)
        )
        self._wakeup.set()
        return await persisted

    def _on_timer(self, ticket: TimerArmed) -> None:
        if self._closed:
            return
        self._channels["timer"].append(_Delivery(event=TimerFired(timer_id=ticket.timer_id), ticket=ticket))
        self._wakeup.set()

    def _schedule(self, ticket: TimerArmed) -> None:
        delay = ticket.fires_at - self._clock()
        logger.debug("Escalation timer %d armed for %s in %.1fs", ticket.timer_id, self.service, delay)
        self._timers.schedule(ticket, delay, self._on_timer)

    # ── Event loop ──────────────────────────────────────────────────

    async def _run(self, pending: list[tuple[int, NotificationRequest]]) -> None:
        incidents_active.inc()
        try:
            await self._deliver(pending)

            while not self._machine.resolved:
                if not await self._arm_timer_if_needed():
                    await asyncio.sleep(self._history_retry)
                    continue

                delivery = await self._next()
                notes = await self._commit(delivery)
                await self._deliver(notes)

            state = self._machine.state
            logger.info(
                "Incident workflow completed: service=%s status=%s alerts=%d level=%d",
                self.service, state.status.value, len(state.alerts), state.escalation_level,
            )
        except asyncio.CancelledError:
            logger.info("Incident loop stopped: service=%s", self.service)
            raise
        finally:
            self._closed = True
            self._timers.close()
            self._reject_queued()
            incidents_active.dec()
            if self._on_closed is not None:
                self._on_closed(self)

    async def _arm_timer_if_needed(self) -> bool:
        timers = self._machine.timers
        if not timers.needs_timer(self._machine.state):
            return True

        ticket = timers.issue(self._machine.state, fires_at=self._clock() + self._escalation_timeout)
        try:
            await self._history.append(self.service, ticket)
        except Exception:
            logger.exception("Failed to record escalation timer for %s, retrying", self.service)
            return False

        self._machine.apply(ticket)
        self._schedule(ticket)
        return True

    async def _next(self) -> _Delivery:
        while True:
            for name in CHANNEL_PRIORITY:
                channel = self._channels[name]
                if channel:
                    return channel.popleft()
            self._wakeup.clear()
            await self._wakeup.wait()

    async def _commit(self, delivery: _Delivery) -> list[tuple[int, NotificationRequest]]:
        event = delivery.event
        recorded = self._deliveries.get(delivery.delivery_id) if delivery.delivery_id else None
        if recorded is not None:
            logger.info(
                "Skipping redelivered %s command: service=%s msg=%s seq=%d",
                event.kind, self.service, delivery.delivery_id, recorded,
            )
            if delivery.persisted is not None and not delivery.persisted.done():
                delivery.persisted.set_result(recorded)
            return []

        with tracer.start_as_current_span("incident.apply") as span:
            span.set_attribute("incident.service", self.service)
            span.set_attribute("incident.event", event.kind)

            try:
                entry = await self._history.append(self.service, event, delivery_id=delivery.delivery_id)
            except Exception as exc:
                logger.exception("Failed to record %s event for %s", event.kind, self.service)
                if delivery.persisted is not None and not delivery.persisted.done():
                    delivery.persisted.set_exception(exc)
                elif delivery.ticket is not None:
                    self._timers.schedule(delivery.ticket, self._history_retry, self._on_timer)
                return []

            notes = self._machine.apply(event)
            if delivery.delivery_id is not None:
                self._deliveries[delivery.delivery_id] = entry.seq
            self._responder.publish(self._machine.state)

            incident_events_total.labels(kind=event.kind).inc()
            if isinstance(event, TimerFired):
                if notes:
                    escalations_total.inc()
                    logger.info(
                        "Escalating incident: service=%s level=%d",
                        self.service, self._machine.state.escalation_level,
                    )
                else:
                    stale_timer_firings_total.inc()
            span.set_attribute("incident.status", self._machine.state.status.value)

        if delivery.persisted is not None and not delivery.persisted.done():
            delivery.persisted.set_result(entry.seq)
        return [(entry.seq, note) for note in notes]

    async def _deliver(self, notes: list[tuple[int, NotificationRequest]]) -> None:
        await deliver_notifications(self.service, self.run_id, notes, self._history, self._dispatcher)

    def _reject_queued(self) -> None:
        for name, channel in self._channels.items():
            while channel:
                delivery = channel.popleft()
                if delivery.persisted is not None and not delivery.persisted.done():
                    delivery.persisted.set_exception(TerminalStateViolation(self.service))
                elif name == "timer":
                    logger.debug("Dropping escalation timer firing for closed incident %s", self.service)
