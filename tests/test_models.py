import pytest
from pydantic import ValidationError

from orchestrator.errors import InvalidCommand
from orchestrator.incident.models import Ack, AddAlert, IncidentState, Resolve, parse_command


def test_parse_command_by_kind():
    assert parse_command("add-alert", {"alertID": "a1"}) == AddAlert(alert_id="a1")
    assert parse_command("add-alert", {"alert_id": "a1"}) == AddAlert(alert_id="a1")
    assert parse_command("ack", {"responder": "carol"}) == Ack(responder="carol")
    assert parse_command("resolve", {"responder": "bob"}) == Resolve(responder="bob")


def test_payload_kind_cannot_override_channel():
    assert parse_command("ack", {"kind": "resolve", "responder": "carol"}) == Ack(responder="carol")


@pytest.mark.parametrize(
    "kind, payload",
    [
        ("escalate", {}),
        ("add-alert", {}),
        ("add-alert", {"alertID": "   "}),
        ("ack", {"responder": ""}),
        ("resolve", {}),
    ],
)
def test_invalid_commands_are_rejected(kind, payload):
    with pytest.raises(InvalidCommand):
        parse_command(kind, payload)


def test_identifiers_are_trimmed():
    assert Ack(responder="  carol ").responder == "carol"


def test_state_is_immutable():
    state = IncidentState(service="db")

    with pytest.raises(ValidationError):
        state.escalation_level = 3


def test_escalation_level_cannot_be_negative():
    with pytest.raises(ValidationError):
        IncidentState(service="db", escalation_level=-1)
