"""Data models for incident state, commands and the persisted event log."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationError

from orchestrator.errors import InvalidCommand

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class IncidentStatus(str, Enum):
    OPEN = "OPEN"
    ACKED = "ACKED"
    RESOLVED = "RESOLVED"


class IncidentState(BaseModel):
    """Durable state of one incident. Instances are immutable; transitions build a new one."""

    model_config = ConfigDict(frozen=True)

    service: str
    status: IncidentStatus = IncidentStatus.OPEN
    alerts: list[str] = Field(default_factory=list)
    escalation_level: int = Field(default=0, ge=0)
    acked_by: str | None = None
    resolved_by: str | None = None


# ── Commands (delivered at-least-once) ──────────────────────────────


class AddAlert(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["add-alert"] = "add-alert"
    alert_id: NonEmptyStr = Field(alias="alertID")


class Ack(BaseModel):
    kind: Literal["ack"] = "ack"
    responder: NonEmptyStr


class Resolve(BaseModel):
    kind: Literal["resolve"] = "resolve"
    responder: NonEmptyStr


Command = Annotated[Union[AddAlert, Ack, Resolve], Field(discriminator="kind")]

COMMAND_KINDS = ("add-alert", "ack", "resolve")


# ── Runtime events recorded alongside commands ──────────────────────


class Started(BaseModel):
    kind: Literal["started"] = "started"
    service: str
    run_id: str


class TimerArmed(BaseModel):
    kind: Literal["timer-armed"] = "timer-armed"
    timer_id: int
    level: int
    fires_at: float  # epoch seconds, produced by the runtime clock


class TimerFired(BaseModel):
    kind: Literal["timer-fired"] = "timer-fired"
    timer_id: int


class NotificationsFlushed(BaseModel):
    """Marks that notifications for every entry up to ``through_seq`` were dispatched."""

    kind: Literal["notifications-flushed"] = "notifications-flushed"
    through_seq: int


Event = Annotated[
    Union[Started, AddAlert, Ack, Resolve, TimerArmed, TimerFired, NotificationsFlushed],
    Field(discriminator="kind"),
]


class HistoryEntry(BaseModel):
    seq: int
    event: Event
    delivery_id: str | None = None  # stream message that carried a command


class NotificationRequest(BaseModel):
    service: str
    message: str
    level: int
    alert_id: str | None = None
    responder: str | None = None


_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(kind: str, payload: dict) -> AddAlert | Ack | Resolve:
    """Decode a command for channel ``kind``, raising InvalidCommand on bad input."""
    if kind not in COMMAND_KINDS:
        raise InvalidCommand(f"Unknown command: {kind}")
    try:
        return _command_adapter.validate_python({**payload, "kind": kind})
    except ValidationError as exc:
        raise InvalidCommand(f"Invalid {kind} command: {exc.errors(include_url=False)}") from exc
