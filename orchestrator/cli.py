"""incidentctl — command-line client for the incident orchestrator API.

Usage:
    incidentctl start --service payments
    incidentctl alert --service payments --alert a1
    incidentctl ack --service payments --responder alice
    incidentctl resolve --service payments --responder alice
    incidentctl status --service payments

Exit codes:
    0 - Success
    1 - Invalid input or request failure
    2 - Incident not found or already resolved
"""

from __future__ import annotations

import argparse
import json
import sys

import httpx

from orchestrator.config import settings

COMMANDS = ("start", "alert", "ack", "resolve", "status")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="incidentctl",
        description="Start incidents, send commands and query incident state",
    )
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--service", "-s", required=True, help="Service name")
    parser.add_argument("--alert", "-a", default="", help="Alert ID (for alert)")
    parser.add_argument("--responder", "-r", default="", help="Responder name (for ack/resolve)")
    parser.add_argument("--request-id", default=None, help="Idempotency key for safe retries")
    parser.add_argument("--api-url", default=settings.api_url, help="Orchestrator base URL")
    return parser


def _request(client: httpx.Client, args: argparse.Namespace) -> httpx.Response:
    service = args.service
    headers = {"Idempotency-Key": args.request_id} if args.request_id else {}

    if args.command == "start":
        return client.post("/incidents", json={"service": service})
    if args.command == "alert":
        return client.post(f"/incidents/{service}/add-alert", json={"alert_id": args.alert}, headers=headers)
    if args.command == "ack":
        return client.post(f"/incidents/{service}/ack", json={"responder": args.responder}, headers=headers)
    if args.command == "resolve":
        return client.post(f"/incidents/{service}/resolve", json={"responder": args.responder}, headers=headers)
    return client.get(f"/incidents/{service}/state")


def validate(args: argparse.Namespace) -> str | None:
    """Return an error message for arguments the command cannot run without."""
    if not args.service.strip():
        return "Service name is required"
    if args.command == "alert" and not args.alert.strip():
        return "Alert ID is required for alert command"
    if args.command in ("ack", "resolve") and not args.responder.strip():
        return f"Responder is required for {args.command} command"
    return None


def main(argv: list[str] | None = None, client: httpx.Client | None = None) -> int:
    args = create_parser().parse_args(argv)

    error = validate(args)
    if error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    own_client = client is None
    client = client or httpx.Client(base_url=args.api_url, timeout=10.0)
    try:
        resp = _request(client, args)
    except httpx.HTTPError as exc:
        print(f"Error: request failed: {exc}", file=sys.stderr)
        return 1
    finally:
        if own_client:
            client.close()

    if resp.status_code in (404, 409):
        print(f"Error: {resp.json().get('error', resp.text)}", file=sys.stderr)
        return 2
    if resp.status_code >= 400:
        print(f"Error: HTTP {resp.status_code}: {resp.text}", file=sys.stderr)
        return 1

    body = resp.json()
    if args.command == "status":
        print("Incident State:")
    print(json.dumps(body, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
