"""Point-in-time reads of the last committed incident state."""

from __future__ import annotations

from orchestrator.incident.models import IncidentState


class QueryResponder:
    """Serves copies of the last published state.

    The event loop publishes after each transition completes, so a reader
    never sees a half-applied event, and reads never wait on the loop.
    """

    def __init__(self, initial: IncidentState) -> None:
        self._snapshot = initial.model_copy(deep=True)

    def publish(self, state: IncidentState) -> None:
        self._snapshot = state.model_copy(deep=True)

    def query(self) -> IncidentState:
        return self._snapshot.model_copy(deep=True)
