"""Test doubles shared across the suite."""

import asyncio

from orchestrator.errors import TransientDispatchError

NOW = 1_000.0
TIMEOUT = 30.0


class ManualTimerDriver:
    """Timer driver whose firings are triggered explicitly by the test."""

    def __init__(self) -> None:
        self.scheduled = {}
        self.closed = False

    def schedule(self, ticket, delay, fire):
        self.scheduled[ticket.timer_id] = (ticket, delay, fire)

    def fire(self, timer_id):
        ticket, _delay, fire = self.scheduled.pop(timer_id)
        fire(ticket)

    def close(self):
        self.closed = True


class RecordingTransport:
    def __init__(self, failures: int = 0) -> None:
        self.sent = []
        self.failures = failures
        self.attempts = 0

    async def send(self, request, key):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientDispatchError("channel unavailable")
        self.sent.append((request, key))

    async def close(self):
        return None

    @property
    def messages(self):
        return [request.message for request, _ in self.sent]


async def settle(rounds: int = 50) -> None:
    """Let every ready task run until the incident loops are idle again."""
    for _ in range(rounds):
        await asyncio.sleep(0)
