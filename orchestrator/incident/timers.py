"""Escalation timer bookkeeping and the asyncio driver that delivers firings.

Timers are never cancelled while an incident is live. Each one is tagged with
the escalation level it was armed under, and a firing only counts when it is
still the outstanding timer, the incident is still OPEN and the level has not
moved. Everything else is a stale firing and is discarded by the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from orchestrator.incident.models import IncidentState, IncidentStatus, TimerArmed

logger = logging.getLogger("orchestrator.incident.timers")


class EscalationTimerManager:
    """Decides when a timer must be (re)armed and filters stale firings."""

    def __init__(self) -> None:
        self._outstanding: TimerArmed | None = None
        self._next_id = 0

    @property
    def outstanding(self) -> TimerArmed | None:
        return self._outstanding

    def needs_timer(self, state: IncidentState) -> bool:
        return state.status == IncidentStatus.OPEN and self._outstanding is None

    def issue(self, state: IncidentState, fires_at: float) -> TimerArmed:
        """Build the ticket for the next timer. It is not outstanding until ``armed`` is called."""
        return TimerArmed(timer_id=self._next_id, level=state.escalation_level, fires_at=fires_at)

    def armed(self, ticket: TimerArmed) -> None:
        self._outstanding = ticket
        self._next_id = max(self._next_id, ticket.timer_id + 1)

    def accept(self, timer_id: int, state: IncidentState) -> bool:
        """Consume a firing. Returns True only if it should escalate the incident."""
        ticket = self._outstanding
        if ticket is None or ticket.timer_id != timer_id:
            return False
        self._outstanding = None
        return not self.is_stale(ticket, state)

    def observe(self, state: IncidentState) -> None:
        """Drop the outstanding timer once a transition has made it stale."""
        if self._outstanding is not None and self.is_stale(self._outstanding, state):
            logger.debug(
                "Timer %d consumed by transition to %s",
                self._outstanding.timer_id, state.status.value,
            )
            self._outstanding = None

    @staticmethod
    def is_stale(ticket: TimerArmed, state: IncidentState) -> bool:
        return state.status != IncidentStatus.OPEN or state.escalation_level != ticket.level


class TimerDriver(Protocol):
    def schedule(self, ticket: TimerArmed, delay: float, fire: Callable[[TimerArmed], None]) -> None: ...

    def close(self) -> None: ...


class AsyncioTimerDriver:
    """Delivers timer firings on the running event loop."""

    def __init__(self) -> None:
        self._handles: dict[int, asyncio.TimerHandle] = {}

    def schedule(self, ticket: TimerArmed, delay: float, fire: Callable[[TimerArmed], None]) -> None:
        loop = asyncio.get_running_loop()

        def _deliver() -> None:
            self._handles.pop(ticket.timer_id, None)
            fire(ticket)

        self._handles[ticket.timer_id] = loop.call_later(max(delay, 0.0), _deliver)

    def close(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
