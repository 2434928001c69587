"""Error taxonomy for incident orchestration."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""


class InvalidCommand(OrchestratorError):
    """A command is missing required fields or cannot be decoded."""


class IncidentNotFound(OrchestratorError):
    def __init__(self, service: str) -> None:
        super().__init__(f"No incident found for service: {service}")
        self.service = service


class TerminalStateViolation(OrchestratorError):
    """An event was addressed to an incident that has already been resolved."""

    def __init__(self, service: str) -> None:
        super().__init__(f"Incident for service {service} is resolved and accepts no events")
        self.service = service


class IncidentStartupError(OrchestratorError):
    """Incident startup could not complete (e.g. the query responder could not be registered)."""


class TransientDispatchError(OrchestratorError):
    """A single notification attempt failed and may be retried."""
