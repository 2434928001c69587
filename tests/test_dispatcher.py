import asyncio
from unittest.mock import AsyncMock

import pytest

from helpers import RecordingTransport
from orchestrator.incident.models import NotificationRequest
from orchestrator.notify.dispatcher import NotificationDispatcher, RetryPolicy, notification_key
from orchestrator.notify.ledger import InMemoryLedger


@pytest.fixture
def request_():
    return NotificationRequest(service="db", message="Incident opened for service: db", level=0)


def test_retry_policy_delays_are_capped():
    policy = RetryPolicy()

    assert [policy.delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]
    assert policy.delay(10) == 60.0


def test_notification_key_depends_on_scope_and_content(request_):
    same = notification_key(request_, scope="r1:0")

    assert notification_key(request_, scope="r1:0") == same
    assert notification_key(request_, scope="r1:4") != same
    assert notification_key(request_.model_copy(update={"level": 1}), scope="r1:0") != same


async def test_success_on_first_attempt_records_key(request_):
    transport, ledger, sleep = RecordingTransport(), InMemoryLedger(), AsyncMock()
    dispatcher = NotificationDispatcher(transport, ledger, sleep=sleep)

    assert await dispatcher.dispatch(request_, key="k1") is True

    assert transport.messages == [request_.message]
    assert ledger.keys == {"k1"}
    sleep.assert_not_awaited()


async def test_retries_with_exponential_backoff(request_):
    transport, sleep = RecordingTransport(failures=3), AsyncMock()
    dispatcher = NotificationDispatcher(transport, InMemoryLedger(), sleep=sleep)

    assert await dispatcher.dispatch(request_, key="k1") is True

    assert transport.attempts == 4
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]


async def test_gives_up_after_maximum_attempts(request_):
    transport, ledger, sleep = RecordingTransport(failures=99), InMemoryLedger(), AsyncMock()
    dispatcher = NotificationDispatcher(transport, ledger, sleep=sleep)

    assert await dispatcher.dispatch(request_, key="k1") is False

    assert transport.attempts == 5
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 8.0]
    assert ledger.keys == set()


async def test_already_delivered_key_is_skipped(request_):
    transport, ledger = RecordingTransport(), InMemoryLedger()
    ledger.keys.add("k1")
    dispatcher = NotificationDispatcher(transport, ledger, sleep=AsyncMock())

    assert await dispatcher.dispatch(request_, key="k1") is True
    assert transport.attempts == 0


async def test_unexpected_transport_error_is_retried(request_):
    transport = AsyncMock()
    transport.send.side_effect = [RuntimeError("boom"), None]
    dispatcher = NotificationDispatcher(transport, InMemoryLedger(), sleep=AsyncMock())

    assert await dispatcher.dispatch(request_, key="k1") is True
    assert transport.send.await_count == 2


async def test_slow_attempt_times_out(request_):
    class SlowTransport(RecordingTransport):
        async def send(self, request, key):
            self.attempts += 1
            await asyncio.sleep(1)

    transport = SlowTransport()
    policy = RetryPolicy(maximum_attempts=2, attempt_timeout=0.01)
    dispatcher = NotificationDispatcher(transport, InMemoryLedger(), policy, sleep=AsyncMock())

    assert await dispatcher.dispatch(request_, key="k1") is False
    assert transport.attempts == 2


async def test_ledger_outage_does_not_block_delivery(request_):
    ledger = AsyncMock()
    ledger.seen.side_effect = ConnectionError("redis down")
    ledger.record.side_effect = ConnectionError("redis down")
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(transport, ledger, sleep=AsyncMock())

    assert await dispatcher.dispatch(request_, key="k1") is True
    assert transport.messages == [request_.message]
