"""Shared fixtures: in-memory substrate, hand-driven timers and a recording transport."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from helpers import NOW, TIMEOUT, ManualTimerDriver, RecordingTransport, settle
from orchestrator.history.store import InMemoryHistory
from orchestrator.incident.registry import IncidentRegistry
from orchestrator.incident.workflow import IncidentWorkflow
from orchestrator.notify.dispatcher import NotificationDispatcher, RetryPolicy
from orchestrator.notify.ledger import InMemoryLedger


@pytest.fixture
def history():
    return InMemoryHistory()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def timers():
    return ManualTimerDriver()


@pytest.fixture
def dispatcher(transport, ledger):
    return NotificationDispatcher(transport, ledger, RetryPolicy(), sleep=AsyncMock())


@pytest.fixture
def clock():
    return lambda: NOW


@pytest_asyncio.fixture
async def start_workflow(history, dispatcher, timers, clock):
    """Factory starting a workflow on the shared in-memory substrate."""
    started = []

    async def _start(service: str = "payments") -> IncidentWorkflow:
        workflow = IncidentWorkflow(
            service,
            history,
            dispatcher,
            escalation_timeout=TIMEOUT,
            timer_driver=timers,
            clock=clock,
        )
        await workflow.start()
        await settle()
        started.append(workflow)
        return workflow

    yield _start

    for workflow in started:
        await workflow.stop()


@pytest.fixture
def timer_drivers():
    """Every timer driver handed out by the registry fixture, in creation order."""
    return []


@pytest_asyncio.fixture
async def registry(history, dispatcher, timer_drivers, clock):
    def _driver():
        driver = ManualTimerDriver()
        timer_drivers.append(driver)
        return driver

    reg = IncidentRegistry(
        history,
        dispatcher,
        escalation_timeout=TIMEOUT,
        timer_driver_factory=_driver,
        clock=clock,
    )
    yield reg
    await reg.shutdown()
