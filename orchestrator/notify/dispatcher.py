"""Retrying, idempotent notification delivery over any transport."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from orchestrator.config import settings
from orchestrator.errors import TransientDispatchError
from orchestrator.incident.models import NotificationRequest
from orchestrator.notify.ledger import DeliveryLedger
from orchestrator.notify.transports import NotificationTransport
from orchestrator.telemetry.metrics import notifications_total

logger = logging.getLogger("orchestrator.notify")


@dataclass(frozen=True)
class RetryPolicy:
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 60.0
    maximum_attempts: int = 5
    attempt_timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            initial_interval=settings.notify_initial_interval_seconds,
            backoff_coefficient=settings.notify_backoff_coefficient,
            maximum_interval=settings.notify_maximum_interval_seconds,
            maximum_attempts=settings.notify_maximum_attempts,
            attempt_timeout=settings.notify_attempt_timeout_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Backoff before retrying after failed attempt number ``attempt`` (1-based)."""
        return min(
            self.initial_interval * self.backoff_coefficient ** (attempt - 1),
            self.maximum_interval,
        )


def notification_key(request: NotificationRequest, scope: str = "") -> str:
    """Content-derived deduplication key.

    ``scope`` identifies the logical event (run id and log position) so that a
    replayed notification maps to the same key while a genuinely new event with
    identical text does not.
    """
    digest = hashlib.sha256()
    digest.update(scope.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(request.model_dump_json().encode("utf-8"))
    return digest.hexdigest()


class NotificationDispatcher:
    """Wraps a transport with the retry policy and the delivery ledger.

    ``dispatch`` never raises for delivery problems: it returns False once the
    policy is exhausted so incident state never depends on the channel.
    """

    def __init__(
        self,
        transport: NotificationTransport,
        ledger: DeliveryLedger,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._ledger = ledger
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def dispatch(self, request: NotificationRequest, key: str | None = None) -> bool:
        key = key or notification_key(request)

        if await self._already_delivered(key):
            logger.info("Notification already delivered, skipping: service=%s key=%s", request.service, key[:12])
            notifications_total.labels(outcome="duplicate").inc()
            return True

        for attempt in range(1, self._policy.maximum_attempts + 1):
            try:
                await self._attempt(request, key)
            except TransientDispatchError as exc:
                logger.warning(
                    "Notification attempt %d/%d failed: service=%s error=%s",
                    attempt, self._policy.maximum_attempts, request.service, exc,
                )
                if attempt < self._policy.maximum_attempts:
                    await self._sleep(self._policy.delay(attempt))
                continue

            await self._mark_delivered(key)
            notifications_total.labels(outcome="delivered").inc()
            return True

        logger.error(
            "Notification dropped after %d attempts: service=%s message=%s",
            self._policy.maximum_attempts, request.service, request.message,
        )
        notifications_total.labels(outcome="failed").inc()
        return False

    async def _attempt(self, request: NotificationRequest, key: str) -> None:
        try:
            await asyncio.wait_for(
                self._transport.send(request, key),
                timeout=self._policy.attempt_timeout,
            )
        except TransientDispatchError:
            raise
        except asyncio.TimeoutError as exc:
            raise TransientDispatchError(
                f"attempt timed out after {self._policy.attempt_timeout:g}s"
            ) from exc
        except Exception as exc:
            raise TransientDispatchError(str(exc) or type(exc).__name__) from exc

    async def _already_delivered(self, key: str) -> bool:
        try:
            return await self._ledger.seen(key)
        except Exception:
            logger.exception("Delivery ledger lookup failed, sending anyway")
            return False

    async def _mark_delivered(self, key: str) -> None:
        try:
            await self._ledger.record(key)
        except Exception:
            logger.exception("Failed to record delivered notification key=%s", key[:12])
