"""Incident state machine: the pure transition function and log replay.

Nothing in here reads the clock or awaits anything. Values that depend on the
outside world (run ids, timer deadlines) arrive as recorded events, so folding
the same log always yields the same state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from orchestrator.errors import TerminalStateViolation
from orchestrator.incident.models import (
    Ack,
    AddAlert,
    HistoryEntry,
    IncidentState,
    IncidentStatus,
    NotificationRequest,
    NotificationsFlushed,
    Resolve,
    Started,
    TimerArmed,
    TimerFired,
)
from orchestrator.incident.timers import EscalationTimerManager

logger = logging.getLogger("orchestrator.incident.machine")


def _format_timeout(seconds: float) -> str:
    return f"{seconds:g}s"


class IncidentMachine:
    """Owns one incident's state and applies events to it one at a time."""

    def __init__(self, service: str, escalation_timeout: float) -> None:
        self.state = IncidentState(service=service)
        self.timers = EscalationTimerManager()
        self.run_id: str | None = None
        self._escalation_timeout = escalation_timeout

    @property
    def resolved(self) -> bool:
        return self.state.status == IncidentStatus.RESOLVED

    def apply(self, event) -> list[NotificationRequest]:
        """Apply a single event and return the notifications it calls for."""
        if self.resolved:
            raise TerminalStateViolation(self.state.service)

        if isinstance(event, Started):
            notes = self._on_started(event)
        elif isinstance(event, AddAlert):
            notes = self._on_add_alert(event)
        elif isinstance(event, Ack):
            notes = self._on_ack(event)
        elif isinstance(event, Resolve):
            notes = self._on_resolve(event)
        elif isinstance(event, TimerArmed):
            self.timers.armed(event)
            notes = []
        elif isinstance(event, TimerFired):
            notes = self._on_timer_fired(event)
        else:
            raise TypeError(f"Not a state event: {type(event).__name__}")

        self.timers.observe(self.state)
        return notes

    def _notify(self, message: str, **extra) -> NotificationRequest:
        return NotificationRequest(
            service=self.state.service,
            message=message,
            level=self.state.escalation_level,
            **extra,
        )

    def _on_started(self, event: Started) -> list[NotificationRequest]:
        self.run_id = event.run_id
        return [self._notify(f"Incident opened for service: {self.state.service}")]

    def _on_add_alert(self, event: AddAlert) -> list[NotificationRequest]:
        self.state = self.state.model_copy(update={"alerts": [*self.state.alerts, event.alert_id]})
        return [self._notify(f"New alert added to incident: {event.alert_id}", alert_id=event.alert_id)]

    def _on_ack(self, event: Ack) -> list[NotificationRequest]:
        if self.state.status != IncidentStatus.OPEN:
            logger.debug(
                "Ignoring ack from %s: incident for %s is %s",
                event.responder, self.state.service, self.state.status.value,
            )
            return []
        self.state = self.state.model_copy(
            update={"status": IncidentStatus.ACKED, "acked_by": event.responder}
        )
        return [self._notify(f"Incident acknowledged by {event.responder}", responder=event.responder)]

    def _on_resolve(self, event: Resolve) -> list[NotificationRequest]:
        self.state = self.state.model_copy(
            update={"status": IncidentStatus.RESOLVED, "resolved_by": event.responder}
        )
        return [self._notify(f"Incident resolved by {event.responder}", responder=event.responder)]

    def _on_timer_fired(self, event: TimerFired) -> list[NotificationRequest]:
        if not self.timers.accept(event.timer_id, self.state):
            logger.debug("Discarding stale escalation timer %d for %s", event.timer_id, self.state.service)
            return []
        self.state = self.state.model_copy(
            update={"escalation_level": self.state.escalation_level + 1}
        )
        return [
            self._notify(
                f"ESCALATION: Incident not acknowledged after "
                f"{_format_timeout(self._escalation_timeout)}, "
                f"escalating to level {self.state.escalation_level}"
            )
        ]


@dataclass
class Replay:
    machine: IncidentMachine
    last_seq: int = -1
    pending: list[tuple[int, NotificationRequest]] = field(default_factory=list)
    deliveries: dict[str, int] = field(default_factory=dict)


def replay(service: str, entries: list[HistoryEntry], escalation_timeout: float) -> Replay:
    """Fold a recorded log through the transition function.

    ``pending`` holds the notifications of entries recorded after the last
    flush marker, i.e. the ones a crash may have prevented from going out.
    ``deliveries`` maps each recorded stream message id to its log position.
    """
    result = Replay(machine=IncidentMachine(service, escalation_timeout))
    for entry in entries:
        result.last_seq = entry.seq
        if entry.delivery_id is not None:
            result.deliveries[entry.delivery_id] = entry.seq
        if isinstance(entry.event, NotificationsFlushed):
            through = entry.event.through_seq
            result.pending = [(seq, note) for seq, note in result.pending if seq > through]
            continue
        for note in result.machine.apply(entry.event):
            result.pending.append((entry.seq, note))
    return result
