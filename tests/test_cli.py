import json

import httpx
import pytest

from orchestrator.cli import create_parser, main, validate


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler), base_url="http://orchestrator.test")


@pytest.mark.parametrize(
    "argv, error",
    [
        (["alert", "--service", "db"], "Alert ID is required for alert command"),
        (["ack", "--service", "db"], "Responder is required for ack command"),
        (["resolve", "--service", "db", "--responder", " "], "Responder is required for resolve command"),
        (["status", "--service", " "], "Service name is required"),
    ],
)
def test_validate_rejects_missing_arguments(argv, error):
    assert validate(create_parser().parse_args(argv)) == error


def test_invalid_input_exits_1_without_request(capsys):
    def handler(request):
        raise AssertionError("no request expected")

    assert main(["alert", "--service", "db"], client=_client(handler)) == 1
    assert "Alert ID is required" in capsys.readouterr().err


def test_alert_posts_command_with_request_id():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"service": "db", "command": "add-alert", "enqueued": True})

    code = main(["alert", "--service", "db", "--alert", "a1", "--request-id", "r-1"], client=_client(handler))

    assert code == 0
    assert seen[0].url.path == "/incidents/db/add-alert"
    assert json.loads(seen[0].content) == {"alert_id": "a1"}
    assert seen[0].headers["Idempotency-Key"] == "r-1"


def test_status_prints_state(capsys):
    state = {
        "service": "db", "status": "ACKED", "alerts": ["a1"],
        "escalation_level": 1, "acked_by": "carol", "resolved_by": None,
    }

    code = main(["status", "--service", "db"], client=_client(lambda r: httpx.Response(200, json=state)))

    out = capsys.readouterr().out
    assert code == 0
    assert out.startswith("Incident State:\n")
    assert json.loads(out.split("\n", 1)[1]) == state


@pytest.mark.parametrize("status", [404, 409])
def test_missing_or_resolved_incident_exits_2(status, capsys):
    handler = lambda r: httpx.Response(status, json={"error": "No incident found for service: db"})

    assert main(["ack", "--service", "db", "--responder", "carol"], client=_client(handler)) == 2
    assert "No incident found" in capsys.readouterr().err


def test_server_error_exits_1():
    handler = lambda r: httpx.Response(500, json={"error": "boom"})

    assert main(["start", "--service", "db"], client=_client(handler)) == 1


def test_connection_failure_exits_1(capsys):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert main(["start", "--service", "db"], client=_client(handler)) == 1
    assert "request failed" in capsys.readouterr().err
