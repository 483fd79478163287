from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from pulse_gateway.metrics import increment_webhook_delivery
from pulse_gateway.models.domain import DeliveryStatus, WebhookDeliveryRecord, WebhookRecord, new_id
from pulse_gateway.utils.encryption import CredentialVault, EncryptionError
from pulse_gateway.utils.redaction import redact_secrets
from pulse_gateway.webhooks.signing import sign_payload

logger = logging.getLogger(__name__)

USER_AGENT = "Pulse-Webhooks/1.0"
MAX_ERROR_LENGTH = 500


class WebhookDispatcher:
    """Fire-and-forget signed webhook delivery with bounded retries.

    `dispatch` schedules delivery as a background task and returns at once.
    Every attempt is recorded; a final failure is logged, never raised.
    """

    def __init__(
        self,
        repository: Any,
        vault: CredentialVault,
        http_client: httpx.AsyncClient,
        *,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.vault = vault
        self.http_client = http_client
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.timeout = timeout
        self.sleep = sleep
        self._tasks: set[asyncio.Task[Any]] = set()

    def dispatch(self, organization_id: str, event: str, data: dict[str, Any]) -> None:
        self._schedule(self.deliver_event(organization_id, event, data))

    async def deliver_event(self, organization_id: str, event: str, data: dict[str, Any]) -> list[bool]:
        try:
            webhooks = await self.repository.list_webhooks_for_event(organization_id, event)
        except Exception:
            logger.exception("failed to load webhooks", extra={"organization_id": organization_id, "event": event})
            return []
        if not webhooks:
            return []

        body = self._body(organization_id, event, data)
        return list(await asyncio.gather(*(self._deliver(webhook, event, body) for webhook in webhooks)))

    async def deliver_to(self, webhook: WebhookRecord, event: str, data: dict[str, Any]) -> bool:
        return await self._deliver(webhook, event, self._body(webhook.organization_id, event, data))

    @staticmethod
    def _body(organization_id: str, event: str, data: dict[str, Any]) -> str:
        payload = {
            "event": event,
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "orgId": organization_id,
            "data": data,
        }
        return json.dumps(payload, default=str, separators=(",", ":"))

    async def _deliver(self, webhook: WebhookRecord, event: str, body: str) -> bool:
        try:
            secret = self.vault.decrypt(webhook.encrypted_secret)
        except EncryptionError:
            logger.error("webhook secret could not be decrypted", extra={"webhook_id": webhook.id})
            return False

        delivery_id = new_id()
        signature = sign_payload(body, secret)
        for attempt in range(1, self.max_attempts + 1):
            headers = {
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                "x-pulse-signature": signature,
                "x-pulse-event": event,
                "x-pulse-id": delivery_id,
                "x-pulse-timestamp": str(int(time.time())),
            }
            started = time.perf_counter()
            http_status: int | None = None
            error: str | None = None
            try:
                response = await self.http_client.post(webhook.url, content=body, headers=headers, timeout=self.timeout)
                http_status = response.status_code
                if not 200 <= http_status < 300:
                    error = f"HTTP {http_status}"
            except httpx.HTTPError as exc:
                error = redact_secrets(str(exc)) or exc.__class__.__name__

            ok = error is None
            await self._record_attempt(
                WebhookDeliveryRecord(
                    webhook_id=webhook.id,
                    organization_id=webhook.organization_id,
                    event_type=event,
                    status=DeliveryStatus.SUCCESS if ok else DeliveryStatus.FAIL,
                    attempt=attempt,
                    delivery_id=delivery_id,
                    http_status=http_status,
                    error=error[:MAX_ERROR_LENGTH] if error else None,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
            )
            increment_webhook_delivery(event=event, status="success" if ok else "fail")
            if ok:
                return True
            if attempt < self.max_attempts:
                await self.sleep(self.backoff_base * 2 ** (attempt - 1))

        logger.warning(
            "webhook delivery failed",
            extra={"webhook_id": webhook.id, "event": event, "delivery_id": delivery_id, "attempts": self.max_attempts},
        )
        return False

    async def _record_attempt(self, record: WebhookDeliveryRecord) -> None:
        try:
            await self.repository.add_webhook_delivery(record)
        except Exception:
            logger.exception("failed to record webhook delivery", extra={"webhook_id": record.webhook_id})

    def _schedule(self, coroutine: Awaitable[Any]) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
