from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any

from pulse_gateway.models.domain import WebhookRecord
from pulse_gateway.models.errors import InvalidRequestError, NotFoundError
from pulse_gateway.utils.encryption import CredentialVault
from pulse_gateway.webhooks.dispatcher import WebhookDispatcher
from pulse_gateway.webhooks.signing import hash_secret

logger = logging.getLogger(__name__)

AI_REQUEST_COMPLETED = "ai_request.completed"
COST_EVENT_CREATED = "cost_event.created"
ALERT_EVENT_TRIGGERED = "alert_event.triggered"
WEBHOOK_TEST = "webhook.test"

WEBHOOK_EVENTS = frozenset({AI_REQUEST_COMPLETED, COST_EVENT_CREATED, ALERT_EVENT_TRIGGERED})


@dataclass(frozen=True)
class CreatedWebhook:
    record: WebhookRecord
    secret: str


class WebhookService:
    def __init__(self, repository: Any, vault: CredentialVault, entitlements: Any, dispatcher: WebhookDispatcher) -> None:
        self.repository = repository
        self.vault = vault
        self.entitlements = entitlements
        self.dispatcher = dispatcher

    async def create_webhook(
        self,
        organization_id: str,
        url: str,
        events: list[str],
        secret: str | None = None,
    ) -> CreatedWebhook:
        unknown = set(events) - WEBHOOK_EVENTS
        if unknown:
            raise InvalidRequestError(f"Unknown webhook event(s): {', '.join(sorted(unknown))}", param="events")
        await self.entitlements.assert_feature(organization_id, "webhooks")

        secret = secret or f"whsec_{secrets.token_hex(24)}"
        record = WebhookRecord(
            organization_id=organization_id,
            url=url,
            events=sorted(set(events)),
            encrypted_secret=self.vault.encrypt(secret).ciphertext,
            secret_hash=hash_secret(secret),
        )
        record = await self.repository.create_webhook(record)
        logger.info("webhook created", extra={"webhook_id": record.id, "organization_id": organization_id})
        return CreatedWebhook(record=record, secret=secret)

    async def list_webhooks(self, organization_id: str) -> list[WebhookRecord]:
        return await self.repository.list_webhooks(organization_id)

    async def set_enabled(self, organization_id: str, webhook_id: str, enabled: bool) -> WebhookRecord:
        record = await self._get(organization_id, webhook_id)
        record.enabled = enabled
        return await self.repository.save_webhook(record)

    async def delete_webhook(self, organization_id: str, webhook_id: str) -> None:
        await self._get(organization_id, webhook_id)
        await self.repository.delete_webhook(webhook_id)

    async def send_test(self, organization_id: str, webhook_id: str) -> bool:
        record = await self._get(organization_id, webhook_id)
        return await self.dispatcher.deliver_to(record, WEBHOOK_TEST, {"message": "Test event from Pulse"})

    async def _get(self, organization_id: str, webhook_id: str) -> WebhookRecord:
        record = await self.repository.get_webhook(organization_id, webhook_id)
        if record is None:
            raise NotFoundError("Webhook not found", param="webhook_id")
        return record
