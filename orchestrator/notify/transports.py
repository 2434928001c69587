"""Notification transports behind the dispatcher."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from orchestrator.errors import TransientDispatchError
from orchestrator.incident.models import NotificationRequest

logger = logging.getLogger("orchestrator.notify")


class NotificationTransport(Protocol):
    async def send(self, request: NotificationRequest, key: str) -> None: ...

    async def close(self) -> None: ...


class LogTransport:
    """Writes notifications to the log. Used when no webhook is configured."""

    async def send(self, request: NotificationRequest, key: str) -> None:
        logger.info(
            "[NOTIFY] Service: %s | Level: %d | Message: %s",
            request.service, request.level, request.message,
        )
        if request.alert_id:
            logger.info("[NOTIFY]   Alert ID: %s", request.alert_id)
        if request.responder:
            logger.info("[NOTIFY]   Responder: %s", request.responder)

    async def close(self) -> None:
        return None


class WebhookTransport:
    """Posts notifications to a chat/paging webhook.

    The dedup key travels as ``Idempotency-Key`` so the receiving side can drop
    a redelivery that slipped past the local ledger.
    """

    def __init__(self, url: str, timeout: float = 10.0, http: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._http.aclose()

    async def send(self, request: NotificationRequest, key: str) -> None:
        payload = {
            "text": f"[{request.service}] (level {request.level}) {request.message}",
            **request.model_dump(exclude_none=True),
        }
        try:
            resp = await self._http.post(self._url, json=payload, headers={"Idempotency-Key": key})
        except httpx.HTTPError as exc:
            raise TransientDispatchError(f"webhook request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise TransientDispatchError(f"webhook returned HTTP {resp.status_code}")
